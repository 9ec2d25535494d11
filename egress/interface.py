from typing import Optional
from dataclasses import dataclass, field

Headers = list[tuple[bytes, bytes]]

def header_value(headers: Headers, name: bytes) -> Optional[bytes]:
    name = name.lower()
    for k, v in headers:
        if k.lower() == name:
            return v
    return None

def has_connection_token(headers: Headers, token: bytes) -> bool:
    for k, v in headers:
        if k.lower() == b'connection':
            if token in (t.strip().lower() for t in v.split(b',')):
                return True
    return False

@dataclass
class Request:
    method: str
    target: str
    headers: Headers
    scheme: str = 'http'
    http_version: bytes = b'1.1'
    body: bytes = b''

    @property
    def host(self) -> str:
        return (header_value(self.headers, b'host') or b'').decode('latin-1')

    @property
    def url(self) -> str:
        # absolute-form targets are already complete
        if self.target.lower().startswith(('http://', 'https://')):
            return self.target
        return f"{self.scheme}://{self.host}{self.target}"

    @property
    def keep_alive(self) -> bool:
        if has_connection_token(self.headers, b'close'):
            return False
        return self.http_version == b'1.1'

@dataclass
class Response:
    status_code: int
    url: str
    headers: Headers = field(default_factory=list)
    req_id: int = 0
    body: bytes = b''
    keep_alive: bool = True
