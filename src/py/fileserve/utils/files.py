import asyncio
import mimetypes
from pathlib import PurePath
from typing import BinaryIO

from ..config import CHUNK_SIZE

mimetypes.init()

DEFAULT_CONTENT_TYPE: str = "application/octet-stream"

# Extensions that `mimetypes` only knows as encodings
MIME_TYPES: dict[str, str] = dict(
	bz2="application/x-bzip",
	gz="application/gzip",
)


def contentType(path: PurePath | str) -> str:
	"""Guesses the content type from the extension of the given path, never
	looking at the file contents."""
	name = str(path)
	return (
		res
		if (res := MIME_TYPES.get(name.rsplit(".", 1)[-1].lower()))
		else mimetypes.guess_type(name, strict=False)[0] or DEFAULT_CONTENT_TYPE
	)


class FileChunks:
	"""A lazy, finite and non-restartable sequence of chunks read from an
	open file. The chunks own the file handle and close it once exhausted,
	on a read failure, or when `close()` is called."""

	__slots__ = ["handle", "length", "size", "read"]

	def __init__(self, handle: BinaryIO, length: int, size: int = CHUNK_SIZE):
		self.handle: BinaryIO = handle
		self.length: int = length
		self.size: int = size
		self.read: int = 0

	@property
	def isClosed(self) -> bool:
		return self.handle.closed

	def __aiter__(self) -> "FileChunks":
		return self

	async def __anext__(self) -> bytes:
		if self.handle.closed:
			raise StopAsyncIteration
		# Never more than the announced length, even if the file grew
		remaining: int = self.length - self.read
		if remaining <= 0:
			self.close()
			raise StopAsyncIteration
		try:
			chunk: bytes = await asyncio.to_thread(
				self.handle.read, min(self.size, remaining)
			)
		except BaseException:
			self.close()
			raise
		if not chunk:
			self.close()
			if self.read < self.length:
				raise OSError(
					f"File truncated while reading: got {self.read} of {self.length} bytes"
				)
			raise StopAsyncIteration
		self.read += len(chunk)
		return chunk

	def close(self) -> None:
		if not self.handle.closed:
			self.handle.close()

	async def aclose(self) -> None:
		self.close()


# EOF
