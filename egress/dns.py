import logging
import asyncio
import ipaddress
import struct
import threading
from typing import Optional
from scapy.layers.dns import DNS

from egress import stat

logger = logging.getLogger(__name__)

HEADER_LENGTH = 12
TYPE_A = 1
CLASS_IN = 1
DEFAULT_TTL = 60
MAX_POINTER = 0x3fff

FLAG_QR = 0x8000
FLAG_OPCODE = 0x7800
FLAG_RD = 0x0100
FLAG_RA = 0x0080

def _skip_name(query: bytes, pos: int) -> Optional[int]:
    """ Return the offset after the name starting at pos, None if it runs past the buffer """
    length = len(query)
    while True:
        if pos >= length:
            return None
        label_len = query[pos]
        if label_len == 0:
            return pos + 1
        if label_len & 0xc0 == 0xc0:
            # compression pointer ends the name
            return pos + 2 if pos + 2 <= length else None
        if label_len & 0xc0:
            return None
        pos += label_len + 1

def build_dns_response(query: bytes, response_ip: str, ttl: int = DEFAULT_TTL) -> bytes:
    """
    Answer every A/IN question in query with response_ip.
    Returns b'' when the query must be dropped.
    """
    if len(query) < HEADER_LENGTH:
        return b''
    ident, flags, qdcount = struct.unpack_from('!HHH', query)

    # only standard queries with at least one question
    if flags & (FLAG_QR | FLAG_OPCODE) or qdcount == 0:
        return b''

    rdata = ipaddress.IPv4Address(response_ip).packed
    questions = []    # (name offset, qtype, qclass)
    pos = HEADER_LENGTH
    for _ in range(qdcount):
        name_end = _skip_name(query, pos)
        if name_end is None or name_end + 4 > len(query):
            return b''
        qtype, qclass = struct.unpack_from('!HH', query, name_end)
        questions.append((pos, qtype, qclass))
        pos = name_end + 4

    # header and question section are copied as is, so question offsets stay valid
    answers = b''
    answer_count = 0
    for name_offset, qtype, qclass in questions:
        if qtype != TYPE_A or qclass != CLASS_IN:
            continue
        if name_offset > MAX_POINTER:
            # a compression pointer cannot reach this name
            continue
        answers += struct.pack('!HHHIH', 0xc000 | name_offset, TYPE_A, CLASS_IN, ttl, len(rdata)) + rdata
        answer_count += 1

    header = struct.pack(
        '!HHHHHH',
        ident,
        FLAG_QR | (flags & FLAG_RD) | FLAG_RA,
        qdcount,
        answer_count,
        0,
        0,
    )
    return header + query[HEADER_LENGTH:pos] + answers

def describe_query(query: bytes) -> str:
    pkt = DNS(query)
    names = [q.qname.decode(errors='replace') for q in (pkt.qd or [])]
    return ', '.join(names)

def answer(query: bytes, response_ip: str, ttl: int, peer) -> bytes:
    response = build_dns_response(query, response_ip, ttl)
    if not response:
        logger.log(logging.DEBUG, f"dropped malformed query from {peer}")
        return b''
    if logger.isEnabledFor(logging.DEBUG):
        logger.log(logging.DEBUG, f"{peer}: {describe_query(query)} -> {response_ip}")
    ancount, = struct.unpack_from('!H', response, 6)
    stat.increase_total_dns_answers(ancount)
    return response

class DNSServerProtocol(asyncio.DatagramProtocol):
    def __init__(self, response_ip: str, ttl: int = DEFAULT_TTL):
        self.response_ip = response_ip
        self.ttl = ttl
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        response = answer(data, self.response_ip, self.ttl, addr)
        if response:
            # best effort, no retry
            self.transport.sendto(response, addr)

    def error_received(self, exc):
        logger.log(logging.DEBUG, f"UDP error: {exc}")

async def handle_tcp_query(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, response_ip: str, ttl: int):
    peer = writer.get_extra_info('peername')
    try:
        length, = struct.unpack('!H', await reader.readexactly(2))
        query = await reader.readexactly(length)
        response = answer(query, response_ip, ttl, peer)
        if response:
            writer.write(struct.pack('!H', len(response)) + response)
            await writer.drain()
    except (asyncio.IncompleteReadError, ConnectionError) as e:
        logger.log(logging.DEBUG, f"TCP query from {peer} failed: {e}")
    finally:
        # one query per connection
        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError:
            pass

class DNSRedirector:
    """ UDP and TCP DNS responder resolving every name to response_ip """

    def __init__(self, host: str, port: int, response_ip: str, ttl: int = DEFAULT_TTL):
        self.host = host
        self.port = port
        self.response_ip = response_ip
        self.ttl = ttl
        self.udp_address = None
        self.tcp_address = None
        self.ready = threading.Event()
        self.error: Optional[BaseException] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop: Optional[asyncio.Event] = None
        self._thread: Optional[threading.Thread] = None

    def start(self):
        """ Run the listeners on a background event loop; raises if binding fails """
        self._thread = threading.Thread(target=self._run, name='dns', daemon=True)
        self._thread.start()
        self.ready.wait()
        if self.error is not None:
            raise self.error

    def stop(self):
        if self._loop is not None and self._stop is not None:
            self._loop.call_soon_threadsafe(self._stop.set)
        if self._thread is not None:
            self._thread.join()

    def _run(self):
        try:
            asyncio.run(self.serve())
        except OSError as e:
            self.error = e
        finally:
            self.ready.set()

    async def serve(self):
        self._loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()

        transport, _ = await self._loop.create_datagram_endpoint(
            lambda: DNSServerProtocol(self.response_ip, self.ttl),
            local_addr=(self.host, self.port),
        )
        self.udp_address = transport.get_extra_info('sockname')
        try:
            server = await asyncio.start_server(
                lambda r, w: handle_tcp_query(r, w, self.response_ip, self.ttl),
                host=self.host,
                # same port as UDP, also when an ephemeral port was requested
                port=self.udp_address[1],
                reuse_address=True,
            )
        except OSError:
            transport.close()
            raise
        self.tcp_address = server.sockets[0].getsockname()
        logger.info(f"DNS listening on {self.udp_address} (udp) and {self.tcp_address} (tcp), answering {self.response_ip}")
        self.ready.set()

        async with server:
            await self._stop.wait()
        transport.close()
