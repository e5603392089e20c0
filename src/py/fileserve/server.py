import asyncio
import errno
import socket
import threading
from dataclasses import dataclass, field
from signal import SIGINT, SIGTERM
from typing import Any, NamedTuple

from .config import CHUNK_SIZE, HOST, LOG_REQUESTS, PORT, TIMEOUT
from .http.model import (
	HTTPBodyWriter,
	HTTPProcessingStatus,
	HTTPRequest,
	HTTPResponse,
)
from .http.parser import HTTPParser
from .http.status import HTTP_STATUS
from .model import Application, Service, mount
from .utils.limits import LimitType, unlimit
from .utils.logging import debug, error, event, exception, info, logged, warning


@dataclass(slots=True)
class ServerState:
	"""Shared between the accept loop and the connections, `stop()` is the
	single notification that triggers the graceful shutdown."""

	stopped: asyncio.Event = field(default_factory=asyncio.Event)
	ready: asyncio.Event = field(default_factory=asyncio.Event)
	address: tuple[str, int] | None = None
	# Connections waiting for a new request, which can be dropped on stop
	idle: set["asyncio.Task[None]"] = field(default_factory=set)

	@property
	def isRunning(self) -> bool:
		return not self.stopped.is_set()

	def stop(self) -> None:
		if not self.stopped.is_set():
			info("Shutdown signal received, starting graceful shutdown")
			self.stopped.set()
		for task in list(self.idle):
			task.cancel()

	def onException(
		self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
	) -> None:
		e = context.get("exception")
		if e:
			exception(e)
		else:
			warning("Event loop error", Message=context.get("message"))


class ServerOptions(NamedTuple):
	host: str = HOST
	port: int = PORT
	backlog: int = 10_000
	# Budget for producing and sending a response
	timeout: float = TIMEOUT
	# How long an idle connection is kept open, waiting for the next request
	keepalive: float = 60.0
	readsize: int = CHUNK_SIZE
	logRequests: bool = LOG_REQUESTS
	stopSignals: bool = True


OPTIONS: ServerOptions = ServerOptions()


def cannedResponse(status: int) -> bytes:
	"""Creates a complete plain text response that closes the connection, used
	when the application could not produce one."""
	message: str = HTTP_STATUS[status]
	body: bytes = message.encode("ascii")
	return (
		f"HTTP/1.1 {status} {message}\r\n"
		"Content-Type: text/plain; charset=utf-8\r\n"
		f"Content-Length: {len(body)}\r\n"
		"Connection: close\r\n"
		"\r\n"
	).encode("ascii") + body


SERVER_BAD_REQUEST: bytes = cannedResponse(400)
SERVER_TIMEOUT: bytes = cannedResponse(408)
SERVER_ERROR: bytes = cannedResponse(500)


class AIOSocketBodyWriter(HTTPBodyWriter):
	"""Specialized body writer to work with AIO sockets."""

	def __init__(
		self,
		client: "socket.socket",
		loop: asyncio.AbstractEventLoop,
	) -> None:
		super().__init__()
		self.client: socket.socket = client
		self.loop: asyncio.AbstractEventLoop = loop

	async def _writeBytes(self, chunk: bytes, more: bool = False) -> bool:
		if chunk:
			# This waits for the socket to be writable, so a slow client
			# slows down the reading of the body.
			await self.loop.sock_sendall(self.client, chunk)
		return True


class AIOSocketServer:
	"""AsyncIO backend using sockets directly."""

	@classmethod
	async def OnRequest(
		cls,
		app: Application,
		client: socket.socket,
		*,
		loop: asyncio.AbstractEventLoop,
		options: ServerOptions,
		state: ServerState,
	) -> None:
		"""Asynchronous worker, processing the requests sent on the client
		socket until the connection is closed or not kept alive."""
		size: int = options.readsize
		buffer = bytearray(size)
		task = asyncio.current_task()
		keep_alive: bool = True
		status: HTTPProcessingStatus = HTTPProcessingStatus.Processing
		read_count: int = 0
		req_count: int = 0
		res_count: int = 0
		parser: HTTPParser = HTTPParser()
		writer: AIOSocketBodyWriter = AIOSocketBodyWriter(client, loop)
		try:
			while keep_alive and state.isRunning and not writer.shouldClose:
				if task:
					state.idle.add(task)
				try:
					n = await asyncio.wait_for(
						loop.sock_recv_into(client, buffer),
						timeout=options.keepalive,
					)
				except (TimeoutError, asyncio.TimeoutError):
					status = HTTPProcessingStatus.Timeout
					break
				finally:
					if task:
						state.idle.discard(task)
				if not n:
					# A no-data means a close
					status = HTTPProcessingStatus.NoData
					break
				read_count += n
				# With HTTP pipelining, there may be more than one request
				# in what we've read.
				for atom in parser.feed(bytes(buffer[:n])):
					if atom is HTTPProcessingStatus.BadFormat:
						warning("Malformed request", Client=f"{id(client):x}")
						await writer.write(SERVER_BAD_REQUEST)
						keep_alive = False
						break
					elif isinstance(atom, HTTPRequest):
						req = atom
						req_count += 1
						if options.logRequests:
							event(req.method, req.path)
						keep_alive = keep_alive and req.keepAlive
						res = await cls.SendResponse(
							req, app, writer, timeout=options.timeout
						)
						if res:
							res_count += 1
							if res.shouldClose:
								keep_alive = False
						if writer.shouldClose:
							break
			if req_count != res_count:
				warning("Incomplete responses", Requests=req_count, Responses=res_count)
			elif status is HTTPProcessingStatus.NoData and read_count and not res_count:
				warning(
					"Client did not feed a complete request",
					ReadCount=read_count,
					Status=status.name,
				)
			else:
				logged(debug) and debug(
					"Connection done",
					Client=f"{id(client):x}",
					Status=status.name,
					Requests=req_count,
				)
		except (BrokenPipeError, ConnectionResetError):
			logged(debug) and debug("Client closed the connection")
		except Exception as e:
			exception(e)
		finally:
			# The above loop takes care of keep alive, so we always close
			# the connection on exit.
			client.close()

	@staticmethod
	async def SendResponse(
		request: HTTPRequest,
		app: Application,
		writer: HTTPBodyWriter,
		*,
		timeout: float = OPTIONS.timeout,
	) -> HTTPResponse | None:
		"""Processes the request within the application and sends a response
		using the given writer, within the `timeout`. The response head is always
		fully written before its body."""
		res: HTTPResponse | None = None

		async def respond() -> None:
			nonlocal res
			r = app.process(request)
			res = r if isinstance(r, HTTPResponse) else await r
			if res is None:
				raise RuntimeError(
					f"Application did not return a response: {request.method} {request.path}"
				)
			await writer.write(res.head())
			# HEAD responses have the headers of the GET, but no body
			if request.method != "HEAD":
				await writer.write(res.body)

		try:
			await asyncio.wait_for(respond(), timeout=timeout)
		except (TimeoutError, asyncio.TimeoutError):
			warning(
				"Request timed out",
				Method=request.method,
				Path=request.path,
				Timeout=timeout,
				Written=writer.written,
			)
			writer.shouldClose = True
			if not writer.written:
				await AIOSocketServer.WriteQuietly(writer, SERVER_TIMEOUT)
		except (BrokenPipeError, ConnectionResetError):
			# Client did an early close
			writer.shouldClose = True
		except Exception as e:
			exception(e, f"Could not respond to {request.method} {request.path}")
			writer.shouldClose = True
			if not writer.written:
				await AIOSocketServer.WriteQuietly(writer, SERVER_ERROR)
		finally:
			if res and res._onClose:
				try:
					res._onClose(res)
				except Exception as e:
					exception(e)
		return res

	@staticmethod
	async def WriteQuietly(writer: HTTPBodyWriter, payload: bytes) -> bool:
		"""Writes a last payload to a connection that may be gone already."""
		try:
			return await writer.write(payload)
		except OSError as e:
			logged(debug) and debug("Could not write to client", Reason=str(e))
			return False

	@classmethod
	async def Serve(
		cls,
		app: Application,
		options: ServerOptions = OPTIONS,
		state: ServerState | None = None,
	) -> None:
		"""Main server coroutine, returns once the server was stopped and
		in-flight requests are done. Raises an `OSError` when the socket
		can't be bound or when accepting connections fails."""
		state = ServerState() if state is None else state
		server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
		server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
		server.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
		try:
			server.bind((options.host, options.port))
		except OSError as e:
			server.close()
			error(
				f"Unable to bind to {options.host}:{options.port}, aborting.",
				"HOSTPORTERR",
				Reason=str(e),
			)
			raise
		# The argument is the backlog of connections that will be accepted before
		# they are refused.
		server.listen(options.backlog)
		# This is what we need to use it with asyncio
		server.setblocking(False)
		host, port = server.getsockname()[:2]
		state.address = (host, port)

		loop = asyncio.get_running_loop()
		# Signal handlers can only be registered from the main thread, and
		# are not available on all platforms.
		signals: list[int] = []
		if options.stopSignals and threading.current_thread() is threading.main_thread():
			for sig in (SIGINT, SIGTERM):
				try:
					loop.add_signal_handler(sig, state.stop)
					signals.append(sig)
				except (NotImplementedError, RuntimeError):
					pass
		loop.set_exception_handler(state.onException)

		await app.start()
		print(f"File server running on http://{host}:{port}", flush=True)
		info("Server listening", icon="🚀", Host=host, Port=port)
		state.ready.set()

		tasks: set[asyncio.Task[None]] = set()
		stopping = loop.create_task(state.stopped.wait())
		accepting: asyncio.Task[tuple[socket.socket, Any]] | None = None
		try:
			while state.isRunning:
				accepting = loop.create_task(loop.sock_accept(server))
				await asyncio.wait(
					(accepting, stopping), return_when=asyncio.FIRST_COMPLETED
				)
				if not accepting.done():
					break
				try:
					client, _ = accepting.result()
				except OSError as e:
					if e.errno in (errno.EMFILE, errno.ENFILE):
						# Too many open files, we give some time for connections
						# to be closed.
						warning("Too many open files", Connections=len(tasks))
						await asyncio.sleep(0.1)
						continue
					else:
						raise
				finally:
					accepting = None
				task = loop.create_task(
					cls.OnRequest(app, client, loop=loop, options=options, state=state)
				)
				tasks.add(task)
				task.add_done_callback(tasks.discard)
		finally:
			server.close()
			for pending_task in (accepting, stopping):
				if pending_task and not pending_task.done():
					pending_task.cancel()
			# Idle connections are dropped, the others get to finish their
			# response within the request timeout.
			for task in list(state.idle):
				task.cancel()
			if tasks:
				info("Waiting for in-flight requests", Count=len(tasks))
				_, pending = await asyncio.wait(tuple(tasks), timeout=options.timeout)
				for task in pending:
					task.cancel()
				await asyncio.gather(*pending, return_exceptions=True)
			for sig in signals:
				loop.remove_signal_handler(sig)
			await app.stop()
			info("Server stopped")


def run(
	*components: Application | Service,
	host: str = OPTIONS.host,
	port: int = OPTIONS.port,
	backlog: int = OPTIONS.backlog,
	timeout: float = OPTIONS.timeout,
	keepalive: float = OPTIONS.keepalive,
	logRequests: bool = OPTIONS.logRequests,
) -> int:
	"""High level function to run the server, returning the process exit
	status."""
	unlimit(LimitType.Files)
	options = ServerOptions(
		host=host,
		port=port,
		backlog=backlog,
		timeout=timeout,
		keepalive=keepalive,
		logRequests=logRequests,
	)
	app = mount(*components)
	try:
		asyncio.run(AIOSocketServer.Serve(app, options))
	except KeyboardInterrupt:
		event("ManualShutdown")
	except Exception as e:
		exception(e)
		error(f"Server error: {e}", "SERVERERR")
		return 1
	event("EOK")
	return 0


# EOF
