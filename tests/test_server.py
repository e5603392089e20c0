import asyncio
import socket
from pathlib import Path
from typing import AsyncIterator

import pytest
from harness import HOST, fetch, get, parseResponse, parseResponses, send, serve

from fileserve import HTTPRequest, HTTPResponse, Service, on, run
from fileserve.server import ServerState
from fileserve.services.files import FileService


class Slow(Service):
	"""Handlers that take their time, to exercise timeouts and shutdown."""

	def init(self) -> None:
		self.closed: bool = False

	@on(GET="/slow")
	async def slow(self, request: HTTPRequest) -> HTTPResponse:
		await asyncio.sleep(0.3)
		return request.respondText("done")

	@on(GET="/stuck")
	async def stuck(self, request: HTTPRequest) -> HTTPResponse:
		await asyncio.sleep(10)
		return request.respondText("never")

	@on(GET="/trickle")
	def trickle(self, request: HTTPRequest) -> HTTPResponse:
		async def chunks() -> AsyncIterator[bytes]:
			try:
				yield b"abcde"
				await asyncio.sleep(10)
				yield b"fghij"
			finally:
				self.closed = True

		return request.respond(chunks(), contentType="text/plain", contentLength=10)


# -----------------------------------------------------------------------------
#
# FILES
#
# -----------------------------------------------------------------------------


def test_serve_file(root: Path):
	async def test(port: int, state: ServerState):
		return await fetch(port, "/hello.txt")

	res = serve(FileService(root), test)
	assert res.status == 200
	assert res.body == b"hi"
	assert res.headers["Content-Length"] == "2"
	assert res.headers["Content-Type"].startswith("text/plain")


def test_serve_content_types(root: Path):
	async def test(port: int, state: ServerState):
		return [
			(await fetch(port, f"/{_}")).headers["Content-Type"]
			for _ in ("report.pdf", "data.unknownext", "sub/nested.txt")
		]

	pdf, unknown, nested = serve(FileService(root), test)
	assert pdf == "application/pdf"
	assert unknown == "application/octet-stream"
	assert nested.startswith("text/plain")


def test_serve_big_file(root: Path):
	async def test(port: int, state: ServerState):
		return await fetch(port, "/big.bin")

	res = serve(FileService(root), test)
	expected = (root / "big.bin").read_bytes()
	assert res.status == 200
	assert res.headers["Content-Length"] == str(len(expected))
	assert res.body == expected


def test_serve_empty_and_encoded(root: Path):
	async def test(port: int, state: ServerState):
		return await fetch(port, "/empty.txt"), await fetch(port, "/with%20space.txt")

	empty, spaced = serve(FileService(root), test)
	assert empty.status == 200
	assert empty.headers["Content-Length"] == "0"
	assert empty.body == b""
	assert spaced.status == 200
	assert spaced.body == b"spaced"


def test_serve_repeated(root: Path):
	async def test(port: int, state: ServerState):
		return [await fetch(port, "/hello.txt") for _ in range(3)]

	first, *rest = serve(FileService(root), test)
	for res in rest:
		assert res == first


@pytest.mark.parametrize(
	"path,status,message",
	[
		("/missing.txt", 404, "File not found: missing.txt"),
		("/sub", 400, "Invalid path: sub is not a file"),
		("/sub/", 400, "Invalid path: sub/ is not a file"),
		("/hello.txt/", 404, "File not found: hello.txt/"),
		("/../secret.txt", 400, "Invalid path: Path contains '..' which is not allowed"),
		("/..%2Fsecret.txt", 400, "Invalid path: Path contains '..' which is not allowed"),
		("//etc/passwd", 400, "Invalid path: /etc/passwd is an absolute path"),
	],
)
def test_serve_errors(root: Path, path: str, status: int, message: str):
	async def test(port: int, state: ServerState):
		return await fetch(port, path)

	res = serve(FileService(root), test)
	assert res.status == status
	assert res.body.decode("utf8") == message
	assert res.headers["Content-Type"] == "text/plain; charset=utf-8"


def test_serve_secret_not_reachable(root: Path):
	async def test(port: int, state: ServerState):
		return await fetch(port, "/../secret.txt")

	res = serve(FileService(root), test)
	assert b"secret" not in res.body


# -----------------------------------------------------------------------------
#
# METHODS
#
# -----------------------------------------------------------------------------


def test_head(root: Path):
	async def test(port: int, state: ServerState):
		return await send(port, get("/big.bin", "HEAD"))

	data = serve(FileService(root), test)
	res = parseResponse(data, head=True)
	assert res.status == 200
	assert res.headers["Content-Length"] == str((root / "big.bin").stat().st_size)
	# Nothing is sent after the head
	assert data.endswith(b"\r\n\r\n")


def test_method_not_allowed(root: Path):
	async def test(port: int, state: ServerState):
		return await fetch(port, "/hello.txt", "POST")

	res = serve(FileService(root), test)
	assert res.status == 405
	assert res.headers["Allow"] == "GET, HEAD"


def test_root_not_found(root: Path):
	async def test(port: int, state: ServerState):
		return await fetch(port, "/")

	assert serve(FileService(root), test).status == 404


# -----------------------------------------------------------------------------
#
# CONNECTIONS
#
# -----------------------------------------------------------------------------


def test_keep_alive_pipelining(root: Path):
	async def test(port: int, state: ServerState):
		return await send(
			port,
			get("/hello.txt", headers={})
			+ get("/missing.txt", headers={})
			+ get("/sub/nested.txt"),
		)

	responses = parseResponses(serve(FileService(root), test))
	assert [_.status for _ in responses] == [200, 404, 200]
	assert responses[0].body == b"hi"
	assert responses[2].body == b"nested"


def test_malformed_request(root: Path):
	async def test(port: int, state: ServerState):
		return await send(port, b"NONSENSE\r\n\r\n")

	res = parseResponse(serve(FileService(root), test))
	assert res.status == 400
	assert res.headers["Connection"] == "close"


def test_request_timeout():
	async def test(port: int, state: ServerState):
		return await fetch(port, "/stuck")

	res = serve(Slow(), test, timeout=0.2)
	assert res.status == 408
	assert res.body == b"Request Timeout"


def test_timeout_while_streaming():
	service = Slow()

	async def test(port: int, state: ServerState):
		return await send(port, get("/trickle"))

	res = parseResponse(serve(service, test, timeout=0.2))
	assert res.status == 200
	assert res.headers["Content-Length"] == "10"
	# The connection is aborted once the head and some body went out
	assert res.body == b"abcde"
	assert service.closed


def test_graceful_shutdown():
	async def test(port: int, state: ServerState):
		request = asyncio.create_task(fetch(port, "/slow"))
		await asyncio.sleep(0.1)
		state.stop()
		await asyncio.sleep(0.05)
		with pytest.raises(OSError):
			await asyncio.open_connection(HOST, port)
		return await request

	res = serve(Slow(), test)
	assert res.status == 200
	assert res.body == b"done"


def test_startup_message(root: Path, capsys: pytest.CaptureFixture[str]):
	async def test(port: int, state: ServerState):
		return port

	port = serve(FileService(root), test)
	assert f"File server running on http://{HOST}:{port}" in capsys.readouterr().out


def test_bind_failure(root: Path):
	with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
		busy.bind((HOST, 0))
		busy.listen(1)
		port = busy.getsockname()[1]
		assert run(FileService(root), host=HOST, port=port) == 1


# EOF
