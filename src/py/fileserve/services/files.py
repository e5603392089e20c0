import asyncio
import os
import stat
from pathlib import Path, PurePath
from typing import BinaryIO, NamedTuple, TypeAlias
from urllib.parse import unquote

from ..config import CHUNK_SIZE
from ..decorators import on
from ..http.model import HTTPRequest, HTTPResponse
from ..model import Service
from ..utils.files import FileChunks, contentType
from ..utils.logging import warning

# -----------------------------------------------------------------------------
#
# ERRORS
#
# -----------------------------------------------------------------------------
# File errors are values returned instead of a stream, `errorStatus` maps
# each of them to a status and a plain text message.


class FileNotFound(NamedTuple):
	"""The path does not exist, or its metadata can't be read."""

	path: str


class FileIOError(NamedTuple):
	"""An I/O operation failed after the file was found."""

	error: OSError


class InvalidPath(NamedTuple):
	"""The path is not allowed, or does not point to a regular file."""

	reason: str


TFileError: TypeAlias = FileNotFound | FileIOError | InvalidPath


def describe(error: OSError) -> str:
	"""Describes an OS error without the local path it may carry."""
	if error.strerror and error.errno is not None:
		return f"{error.strerror} (os error {error.errno})"
	else:
		return error.strerror or str(error)


def errorStatus(error: TFileError) -> tuple[int, str]:
	"""Returns the HTTP status and message for the given file error."""
	match error:
		case FileNotFound(path):
			return 404, f"File not found: {path}"
		case FileIOError(e):
			return 500, f"Server error: {describe(e)}"
		case InvalidPath(reason):
			return 400, f"Invalid path: {reason}"
		case _:
			raise ValueError(f"Unsupported file error: {error}")


# -----------------------------------------------------------------------------
#
# FILE STREAM
#
# -----------------------------------------------------------------------------


class FileStream(NamedTuple):
	"""An opened file, ready to be sent."""

	path: PurePath
	contentType: str
	length: int
	chunks: FileChunks


def closeOpened(opening: "asyncio.Future[BinaryIO]") -> None:
	"""Closes the handle of an open that completed after its request was
	cancelled."""
	if not opening.cancelled() and opening.exception() is None:
		opening.result().close()


# -----------------------------------------------------------------------------
#
# SERVICE
#
# -----------------------------------------------------------------------------


class FileService(Service):
	"""Serves the regular files found under `root` (the working directory by
	default), one route catching every path."""

	def __init__(
		self,
		root: str | Path | None = None,
		*,
		chunkSize: int = CHUNK_SIZE,
	):
		self.root: Path = (
			root if isinstance(root, Path) else Path(root or ".")
		).absolute()
		# Symlinks in the root itself are fine, so we compare canonical forms
		self.canonicalRoot: Path = self.root.resolve()
		self.chunkSize: int = chunkSize
		super().__init__()

	def checkPath(self, path: str) -> PurePath | InvalidPath:
		"""Structural checks on the requested path, before touching the
		filesystem."""
		if "\x00" in path:
			return InvalidPath("Path contains a null byte")
		requested = PurePath(path)
		if any(_ == ".." for _ in requested.parts):
			return InvalidPath("Path contains '..' which is not allowed")
		elif requested.is_absolute() or requested.drive:
			return InvalidPath(f"{path} is an absolute path")
		else:
			return requested

	def resolvePath(self, path: str, requested: PurePath) -> Path | TFileError:
		"""Returns the local path for the requested one, making sure that it
		stays within the root once symlinks are resolved."""
		local_path = self.root / requested
		try:
			canonical = local_path.resolve()
		except (OSError, RuntimeError):
			# Symlink loops end up there
			return FileNotFound(path)
		if not canonical.is_relative_to(self.canonicalRoot):
			return InvalidPath(f"{path} is outside of the served directory")
		return local_path

	async def openFile(self, path: str) -> FileStream | TFileError:
		"""Resolves, checks and opens the file at the given (decoded) path,
		returning an error value when any of these fail."""
		requested = self.checkPath(path)
		if isinstance(requested, InvalidPath):
			return requested
		local_path = await asyncio.to_thread(self.resolvePath, path, requested)
		if not isinstance(local_path, Path):
			return local_path
		# `PurePath` drops trailing slashes, which the filesystem expects to
		# point to a directory.
		stat_path = f"{local_path}/" if path.endswith(("/", os.sep)) else local_path
		try:
			info = await asyncio.to_thread(os.stat, stat_path)
		except OSError:
			return FileNotFound(path)
		if not stat.S_ISREG(info.st_mode):
			return InvalidPath(f"{path} is not a file")
		opening = asyncio.ensure_future(
			asyncio.to_thread(open, local_path, "rb", self.chunkSize)
		)
		try:
			handle = await asyncio.shield(opening)
		except asyncio.CancelledError:
			# The thread still completes the open, its handle is closed then.
			opening.add_done_callback(closeOpened)
			raise
		except OSError as e:
			return FileIOError(e)
		# NOTE: The size is taken from the open handle, the file may have
		# changed since the `stat` above.
		try:
			length = os.fstat(handle.fileno()).st_size
		except OSError as e:
			handle.close()
			return FileIOError(e)
		return FileStream(
			path=requested,
			contentType=contentType(requested),
			length=length,
			chunks=FileChunks(handle, length, self.chunkSize),
		)

	@on(GET_HEAD="/{path:rest}")
	async def read(self, request: HTTPRequest, path: str) -> HTTPResponse:
		res = await self.openFile(unquote(path))
		if isinstance(res, FileStream):
			chunks = res.chunks
			return request.respond(
				chunks,
				contentType=res.contentType,
				contentLength=res.length,
			).onClose(lambda _: chunks.close())
		else:
			status, message = errorStatus(res)
			warning(
				"File not served",
				Method=request.method,
				Path=path,
				Status=status,
			)
			return request.error(status, message)


# EOF
