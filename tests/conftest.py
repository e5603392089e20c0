import os
from pathlib import Path

import pytest

from fileserve.utils.logging import LogLevel, setLevel

# A payload spanning several read chunks, with a partial last one
BIG_SIZE: int = 3 * 65_536 + 123


@pytest.fixture(autouse=True)
def quiet():
	previous = setLevel(LogLevel.Error)
	yield
	setLevel(previous)


@pytest.fixture
def root(tmp_path: Path) -> Path:
	"""A served directory with a few files and a sub-directory."""
	served = tmp_path / "www"
	served.mkdir()
	(served / "hello.txt").write_bytes(b"hi")
	(served / "report.pdf").write_bytes(b"%PDF-1.4\n%%EOF\n")
	(served / "data.unknownext").write_bytes(b"\x00\x01\x02")
	(served / "empty.txt").write_bytes(b"")
	(served / "big.bin").write_bytes(os.urandom(BIG_SIZE))
	(served / "with space.txt").write_bytes(b"spaced")
	(served / "sub").mkdir()
	(served / "sub" / "nested.txt").write_bytes(b"nested")
	(tmp_path / "secret.txt").write_bytes(b"secret")
	return served


# EOF
