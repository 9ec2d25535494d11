import abc
import logging
import struct
from dataclasses import dataclass, field
from itertools import count
from typing import Optional

from egress import stat
from egress.interface import Headers, Request, Response, has_connection_token
from egress.transport import DelegateError

logger = logging.getLogger(__name__)

MAX_METHOD = 32
MAX_URL = 4096
MAX_HEADERS = 64
MAX_FIELD = 256

# recomputed by the executor
DROPPED_REQUEST_HEADERS = {b'host', b'user-agent', b'content-length'}
# replaced by the session's own framing
DROPPED_RESPONSE_HEADERS = {b'content-length', b'transfer-encoding', b'connection', b'keep-alive'}

_HEADER_FIELDS = '256s' * (2 * MAX_HEADERS)
REQUEST_BLOCK = struct.Struct(f'<QQQ{MAX_URL}s{MAX_METHOD}s{_HEADER_FIELDS}')
RESULT_BLOCK = struct.Struct(f'<QQQQ{_HEADER_FIELDS}')

def _clip(value: bytes, size: int) -> bytes:
    # room for the NUL terminator
    return value[:size - 1]

def _clip_str(value: str, size: int) -> str:
    return _clip(value.encode('latin-1', 'replace'), size).decode('latin-1')

def _unpad(value: bytes) -> bytes:
    return value.split(b'\0', 1)[0]

def _bound_headers(headers: Headers) -> Headers:
    return [(_clip(k, MAX_FIELD), _clip(v, MAX_FIELD)) for k, v in headers[:MAX_HEADERS]]

def _pack_headers(headers: Headers) -> list[bytes]:
    fields = []
    for k, v in headers:
        fields += [k, v]
    fields += [b''] * (2 * MAX_HEADERS - len(fields))
    return fields

def _unpack_headers(fields, headers_count: int) -> Headers:
    if headers_count > MAX_HEADERS:
        raise ValueError(f"header count {headers_count} exceeds {MAX_HEADERS}")
    return [(_unpad(fields[2 * i]), _unpad(fields[2 * i + 1])) for i in range(headers_count)]

@dataclass
class FetchDescriptor:
    correlation_id: int
    method: str
    url: str
    headers: Headers = field(default_factory=list)
    body: bytes = b''

    def __post_init__(self):
        self.method = _clip_str(self.method, MAX_METHOD)
        self.url = _clip_str(self.url, MAX_URL)
        self.headers = _bound_headers(self.headers)

    @classmethod
    def from_request(cls, correlation_id: int, req: Request) -> "FetchDescriptor":
        headers = [(k, v) for k, v in req.headers if k.lower() not in DROPPED_REQUEST_HEADERS]
        return cls(
            correlation_id=correlation_id,
            method=req.method,
            url=req.url,
            headers=headers[:MAX_HEADERS],
            body=req.body,
        )

    def pack(self) -> bytes:
        """ Fixed request block followed by the body """
        block = REQUEST_BLOCK.pack(
            self.correlation_id,
            len(self.headers),
            len(self.body),
            self.url.encode('latin-1'),
            self.method.encode('latin-1'),
            *_pack_headers(self.headers),
        )
        return block + self.body

    @classmethod
    def unpack(cls, data: bytes) -> "FetchDescriptor":
        if len(data) < REQUEST_BLOCK.size:
            raise ValueError(f"request block too short ({len(data)} bytes)")
        correlation_id, headers_count, body_length, url, method, *fields = REQUEST_BLOCK.unpack_from(data)
        body = data[REQUEST_BLOCK.size:]
        if len(body) != body_length:
            raise ValueError(f"body length mismatch: expected {body_length}, got {len(body)}")
        return cls(
            correlation_id=correlation_id,
            method=_unpad(method).decode('latin-1'),
            url=_unpad(url).decode('latin-1'),
            headers=_unpack_headers(fields, headers_count),
            body=body,
        )

@dataclass
class FetchResult:
    correlation_id: int
    status: int
    headers: Headers = field(default_factory=list)
    body_length: int = 0
    ready: bool = True

    def __post_init__(self):
        self.headers = _bound_headers(self.headers)

    def pack(self) -> bytes:
        return RESULT_BLOCK.pack(
            int(self.ready),
            self.status,
            self.body_length,
            len(self.headers),
            *_pack_headers(self.headers),
        )

    @classmethod
    def unpack(cls, correlation_id: int, data: bytes) -> "FetchResult":
        if len(data) != RESULT_BLOCK.size:
            raise ValueError(f"result block has {len(data)} bytes, expected {RESULT_BLOCK.size}")
        ready, status, body_length, headers_count, *fields = RESULT_BLOCK.unpack(data)
        return cls(
            correlation_id=correlation_id,
            status=status,
            headers=_unpack_headers(fields, headers_count),
            body_length=body_length,
            ready=bool(ready),
        )

class FetchExecutor(abc.ABC):
    """ Performs the real network I/O for delegated requests """

    @abc.abstractmethod
    def submit(self, descriptor: FetchDescriptor) -> bool:
        ...

    @abc.abstractmethod
    def poll_headers(self, correlation_id: int) -> Optional[FetchResult]:
        ...

    @abc.abstractmethod
    def poll_body(self, correlation_id: int) -> Optional[bytes]:
        ...

def bad_request(url: str, why: str, req_id: int = 0) -> Response:
    return Response(
        status_code=400,
        url=url,
        headers=[(b'Server', b'egress'), (b'Content-Type', b'text/plain')],
        req_id=req_id,
        body=why.encode(),
        keep_alive=False,
    )

class FetchDelegate:
    def __init__(self, executor: FetchExecutor):
        self.executor = executor
        self.req_counter = count(1)

    def fetch(self, req: Request) -> Response:
        descriptor = FetchDescriptor.from_request(next(self.req_counter), req)

        logger.log(logging.INFO, f"> {descriptor.method} {descriptor.url}")
        try:
            response = self.exchange(descriptor)
        except DelegateError as e:
            logger.log(logging.WARNING, f"! {descriptor.url} (id {descriptor.correlation_id}): {e}")
            response = bad_request(descriptor.url, str(e), descriptor.correlation_id)
        logger.log(logging.INFO, f"< {response.status_code} {response.url}")
        return response

    def exchange(self, descriptor: FetchDescriptor) -> Response:
        """ Run submit -> poll_headers -> poll_body. Raises DelegateError. """
        uid = descriptor.correlation_id

        if not self.executor.submit(descriptor):
            raise DelegateError("Request submission failed")
        stat.increase_total_sent_delegate(len(descriptor.body))

        result = self.executor.poll_headers(uid)
        if result is None:
            raise DelegateError("Poll response headers failed")

        body = b''
        if result.body_length > 0:
            body = self.executor.poll_body(uid)
            if body is None or len(body) != result.body_length:
                raise DelegateError("Poll response body failed")
            stat.increase_total_received_delegate(len(body))

        if result.status == 0:
            raise DelegateError("Fetch failed, either due to a network error or a refused request.")
        if not 200 <= result.status <= 999:
            raise DelegateError(f"Fetch returned unusable status {result.status}")

        dropped = DROPPED_RESPONSE_HEADERS
        if descriptor.method.upper() == 'HEAD':
            # the body is never sent, so only the executor knows the real length
            dropped = dropped - {b'content-length'}
        headers = [(k, v) for k, v in result.headers if k.lower() not in dropped]
        return Response(
            status_code=result.status,
            url=descriptor.url,
            headers=headers,
            req_id=uid,
            body=body,
            keep_alive=not has_connection_token(result.headers, b'close'),
        )
