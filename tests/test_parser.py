from fileserve.http.model import (
	HTTPHeaders,
	HTTPProcessingStatus,
	HTTPRequest,
	HTTPRequestLine,
	HTTPResponse,
)
from fileserve.http.parser import HTTPParser, parseQuery


def requests(parser: HTTPParser, *chunks: bytes) -> list[HTTPRequest]:
	return [
		atom
		for chunk in chunks
		for atom in parser.feed(chunk)
		if isinstance(atom, HTTPRequest)
	]


def test_parse_split_request():
	parser = HTTPParser()
	atoms = [
		atom
		for chunk in [
			b"GET /time/5 ",
			b"HTTP/1.1\r\nHost: ",
			b"127.0.0.1\r",
			b"\nConn",
			b"ection: close\r\n",
			b"\r",
			b"\n",
		]
		for atom in parser.feed(chunk)
	]
	assert atoms[0] == HTTPRequestLine("GET", "/time/5", "", "HTTP/1.1")
	assert isinstance(atoms[1], HTTPHeaders)
	assert atoms[1].headers == {"Host": "127.0.0.1", "Connection": "close"}
	req = atoms[2]
	assert isinstance(req, HTTPRequest)
	assert req.method == "GET"
	assert req.path == "/time/5"
	assert req.header("connection") == "close"
	assert not req.keepAlive


def test_parse_query():
	parser = HTTPParser()
	(req,) = requests(parser, b"GET /hello.txt?format=raw&x HTTP/1.1\r\n\r\n")
	assert req.path == "/hello.txt"
	assert req.query == {"format": "raw", "x": ""}
	assert req.param("format") == "raw"
	assert req.keepAlive
	assert parseQuery("") == {}


def test_parse_pipelined_requests():
	parser = HTTPParser()
	reqs = requests(
		parser,
		b"GET /a HTTP/1.1\r\nHost: x\r\n\r\nGET /b HTTP/1.1\r\nHost: x\r\n\r\nGET /c",
		b" HTTP/1.1\r\n\r\n",
	)
	assert [_.path for _ in reqs] == ["/a", "/b", "/c"]


def test_parse_body():
	parser = HTTPParser()
	reqs = requests(
		parser,
		b"POST /upload HTTP/1.1\r\nContent-Length: 10\r\n\r\n01234",
		b"56789GET /next HTTP/1.1\r\n\r\n",
	)
	assert [_.method for _ in reqs] == ["POST", "GET"]
	assert reqs[0].body.raw == b"0123456789"
	assert reqs[0].contentLength == 10
	assert reqs[1].path == "/next"


def test_parse_malformed():
	parser = HTTPParser()
	atoms = list(parser.feed(b"NONSENSE\r\n"))
	assert atoms == [HTTPProcessingStatus.BadFormat]


def test_http10_closes_by_default():
	parser = HTTPParser()
	(req,) = requests(parser, b"GET / HTTP/1.0\r\n\r\n")
	assert not req.keepAlive
	(req,) = requests(parser, b"GET / HTTP/1.0\r\nConnection: keep-alive\r\n\r\n")
	assert req.keepAlive


def test_response_head():
	res = HTTPResponse.Create(
		b"hi", contentType="text/plain", status=200, message=None
	)
	assert res.head() == (
		b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\nContent-Length: 2\r\n\r\n"
	)
	assert not res.shouldClose
	empty = HTTPResponse.Create(status=404)
	assert empty.getHeader("Content-Length") == "0"
	assert empty.head().startswith(b"HTTP/1.1 404 Not Found\r\n")


def test_response_stream_without_length_closes():
	async def stream():
		yield b"x"

	res = HTTPResponse.Create(stream())
	assert res.shouldClose
	res = HTTPResponse.Create(stream(), contentLength=1)
	assert not res.shouldClose
	assert res.getHeader("Content-Length") == "1"


# EOF
