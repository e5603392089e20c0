"""
Static File Server Example

Serves the files of a given directory (the current one by default) on
port 3000, with a shorter request timeout than the default.

Usage:
    python fileserver.py [DIRECTORY]

Test with:
    curl -i http://localhost:3000/README.md
    curl -I http://localhost:3000/README.md
"""

import sys

from fileserve import run
from fileserve.services.files import FileService
from fileserve.utils.logging import info


class StaticFileServer(FileService):
	"""A file service that logs the directory it serves."""

	def init(self) -> None:
		info("Static file server initialized", Root=str(self.root))


if __name__ == "__main__":
	root = sys.argv[1] if len(sys.argv) > 1 else None
	sys.exit(run(StaticFileServer(root), timeout=10.0))

# EOF
