import asyncio
from typing import Any, Awaitable, Callable, NamedTuple, TypeVar

from fileserve.model import Application, Service, mount
from fileserve.server import AIOSocketServer, ServerOptions, ServerState

T = TypeVar("T")

HOST: str = "127.0.0.1"


class Response(NamedTuple):
	status: int
	message: str
	headers: dict[str, str]
	body: bytes


def parseResponses(data: bytes, *, head: bool = False) -> list[Response]:
	"""Splits the raw bytes sent by the server into responses, using the
	`Content-Length` header to delimit bodies."""
	res: list[Response] = []
	while data:
		i = data.find(b"\r\n\r\n")
		assert i != -1, f"Incomplete response head: {data!r}"
		lines = data[:i].decode("ascii").split("\r\n")
		_, status, message = lines[0].split(" ", 2)
		headers: dict[str, str] = {}
		for line in lines[1:]:
			k, v = line.split(":", 1)
			headers[k.strip()] = v.strip()
		length = 0 if head else int(headers.get("Content-Length", "0"))
		body = data[i + 4 : i + 4 + length]
		res.append(Response(int(status), message, headers, body))
		data = data[i + 4 + length :]
	return res


def parseResponse(data: bytes, *, head: bool = False) -> Response:
	responses = parseResponses(data, head=head)
	assert len(responses) == 1, f"Expected one response, got {len(responses)}"
	return responses[0]


def get(path: str, method: str = "GET", headers: dict[str, str] | None = None) -> bytes:
	"""Creates a raw request that asks the server to close the connection."""
	lines = [f"{method} {path} HTTP/1.1", f"Host: {HOST}"]
	for k, v in ({"Connection": "close"} if headers is None else headers).items():
		lines.append(f"{k}: {v}")
	return ("\r\n".join(lines) + "\r\n\r\n").encode("ascii")


async def send(port: int, payload: bytes, *, timeout: float = 5.0) -> bytes:
	"""Sends the payload and reads everything until the server closes the
	connection."""
	reader, writer = await asyncio.open_connection(HOST, port)
	try:
		writer.write(payload)
		await writer.drain()
		return await asyncio.wait_for(reader.read(), timeout=timeout)
	finally:
		writer.close()
		try:
			await writer.wait_closed()
		except ConnectionError:
			pass


async def fetch(port: int, path: str, method: str = "GET") -> Response:
	return parseResponse(await send(port, get(path, method)), head=method == "HEAD")


async def serving(
	components: Application | Service | list[Service],
	test: Callable[[int, ServerState], Awaitable[T]],
	**options: Any,
) -> T:
	"""Runs the server on an ephemeral port for the duration of `test`,
	which is given the port and the server state."""
	app = mount(*(components if isinstance(components, list) else [components]))
	state = ServerState()
	opts = ServerOptions(
		**({"port": 0, "stopSignals": False, "logRequests": False} | options)
	)
	server = asyncio.create_task(AIOSocketServer.Serve(app, opts, state))
	ready = asyncio.create_task(state.ready.wait())
	await asyncio.wait((server, ready), return_when=asyncio.FIRST_COMPLETED)
	if server.done():
		ready.cancel()
		# Raises the server error
		server.result()
	assert state.address
	try:
		return await test(state.address[1], state)
	finally:
		state.stop()
		await asyncio.wait_for(server, timeout=10)


def serve(
	components: Application | Service | list[Service],
	test: Callable[[int, ServerState], Awaitable[T]],
	**options: Any,
) -> T:
	return asyncio.run(serving(components, test, **options))


# EOF
