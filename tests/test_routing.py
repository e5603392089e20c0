import asyncio

import pytest

from fileserve import HTTPRequest, HTTPRequestError, HTTPResponse, Service, on
from fileserve.http.model import HTTPHeaders
from fileserve.model import Application, mount
from fileserve.routing import Dispatcher, Handler, Route

ROUTES: dict[str, tuple[list[str], list[str]]] = {
	"post": (["post"], ["", "/post", "post/", "poster"]),
	"post/": (["post/"], ["", "/post/", "/post", "poster/"]),
	"post/{id}": (["post/a", "post/ab"], ["", "post/", "/post", "post/a/"]),
	"/{path:rest}": (["/a", "/a/b.txt", "/../etc/passwd", "//etc"], ["", "/"]),
	"/{path:any}": (["/", "/a/b"], [""]),
	"/v{n:int}.txt": (["/v1.txt", "/v-2.txt"], ["/vx.txt", "/v1Xtxt"]),
}


@pytest.mark.parametrize("route", list(ROUTES))
def test_route_match(route: str):
	ok, no_ok = ROUTES[route]
	r = Route(route)
	for t in ok:
		assert r.match(t) is not None, f"'{t}' should be matched by '{route}'"
	for t in no_ok:
		assert r.match(t) is None, f"'{t}' should not be matched by '{route}'"


def test_route_extracts_parameters():
	assert Route("/{path:rest}").match("/sub/hello.txt") == {"path": "sub/hello.txt"}
	assert Route("/v{n:int}.txt").match("/v12.txt") == {"n": 12}


def test_route_unknown_pattern():
	with pytest.raises(ValueError):
		Route("/{path:nope}")


class Files(Service):
	@on(GET_HEAD="/{path:rest}")
	def read(self, request: HTTPRequest, path: str) -> HTTPResponse:
		return request.respondText(f"read:{path}")

	@on(GET="/fail")
	def fail(self, request: HTTPRequest) -> HTTPResponse:
		raise HTTPRequestError("Nope", status=418)


def request(method: str, path: str) -> HTTPRequest:
	return HTTPRequest(method, path, None, HTTPHeaders({}))


def process(app: Application, method: str, path: str) -> HTTPResponse:
	async def main() -> HTTPResponse:
		res = app.process(request(method, path))
		return res if isinstance(res, HTTPResponse) else await res

	return asyncio.run(main())


def test_on_registers_methods():
	handler = Handler.Get(Files().read)
	assert handler is not None
	assert handler.methods == {"GET": ["/{path:rest}"], "HEAD": ["/{path:rest}"]}


def test_on_needs_a_function():
	with pytest.raises(RuntimeError):
		on(GET="/length")(len)


def test_dispatcher_priority():
	class Prioritized(Service):
		@on(GET="/{path:rest}")
		def catchAll(self, request: HTTPRequest, path: str) -> HTTPResponse:
			return request.respondText("all")

		@on(priority=10, GET="/special")
		def special(self, request: HTTPRequest) -> HTTPResponse:
			return request.respondText("special")

	dispatcher = Dispatcher()
	for handler in Prioritized().handlers:
		dispatcher.register(handler)
	route, params = dispatcher.match("GET", "/special")
	assert route and route.text == "/special"
	assert params == {}
	route, params = dispatcher.match("GET", "/other")
	assert route and route.text == "/{path:rest}"
	assert params == {"path": "other"}
	assert dispatcher.match("POST", "/other") == (None, None)


def test_application_dispatch():
	app = mount(Files())
	res = process(app, "GET", "/sub/hello.txt")
	assert res.status == 200
	assert res.body is not None and res.body.payload == b"read:sub/hello.txt"


def test_application_defaults():
	app = mount(Files())
	assert process(app, "GET", "/").status == 404
	res = process(app, "POST", "/hello.txt")
	assert res.status == 405
	assert res.getHeader("Allow") == "GET, HEAD"


def test_application_request_error():
	res = process(mount(Files()), "GET", "/fail")
	assert res.status == 418
	assert res.body is not None and res.body.payload == b"Nope"


def test_mount_twice_fails():
	service = Files()
	mount(service)
	with pytest.raises(RuntimeError):
		mount(service)


# EOF
