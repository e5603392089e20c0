# The server only ever listens on loopback, there is no CLI or environment
# override for any of these.
HOST: str = "127.0.0.1"

PORT: int = 3000

# Budget in seconds for producing and sending a response
TIMEOUT: float = 30.0

# Size of the read buffer and of the chunks sent for file bodies
CHUNK_SIZE: int = 65_536

LOG_REQUESTS: bool = True

# EOF
