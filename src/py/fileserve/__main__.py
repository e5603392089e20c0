import sys

from .server import run
from .services.files import FileService


def main() -> int:
	return run(FileService())


if __name__ == "__main__":
	sys.exit(main())

# EOF
