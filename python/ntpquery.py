#!/usr/bin/env python3
"""
ntpquery.py - Single-shot NTP client (RFC 5905 section 7.3)

SPDX-License-Identifier: MIT
Copyright (c) 2025 tsupplis

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.

Query a server once, print clock offset and round-trip delay in ms.

Library use:
    from ntpquery import query, query_detailed, Request
    now, err = query("pool.ntp.org")
    response = query_detailed(Request("time.google.com", version=3, timeout=2))

Usage:
    ./ntpquery.py                    # query pool.ntp.org
    ./ntpquery.py -t 1500 -r 2 -V 3 -v time.google.com
"""

import socket
import struct
import sys
import syslog
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Iterable, Iterator, Optional, Tuple

# Constants
DEFAULT_NTP_PORT = 123
DEFAULT_VERSION = 4
DEFAULT_TIMEOUT = 5.0
SUPPORTED_VERSIONS = (3, 4)
NTP_PACKET_SIZE = 48
NTP_UNIX_EPOCH_DIFF = 2208988800
NTP_EPOCH = datetime(1900, 1, 1, tzinfo=timezone.utc)
NS_PER_SEC = 1_000_000_000
DEFAULT_SERVER = "pool.ntp.org"
DEFAULT_TIMEOUT_MS = 5000
DEFAULT_RETRIES = 3
MAX_ROUNDTRIP_MS = 10000

# LI/VN/Mode, stratum, poll, precision, root delay, root dispersion,
# reference id, then four (seconds, fraction) timestamps
PACKET_FORMAT = "!BBbbIII8I"


class NtpError(Exception):
    """Base class for every query failure"""


class NtpVersionError(NtpError):
    """Requested protocol version is not 3 or 4"""


class NtpResolutionError(NtpError):
    """Host/port could not be resolved"""


class NtpConnectError(NtpError):
    """Socket could not be opened"""


class NtpTimeoutError(NtpError):
    """Deadline elapsed before the exchange completed"""


class NtpWriteError(NtpError):
    """Request could not be sent"""


class NtpReadError(NtpError):
    """Reply could not be received"""


class NtpPacketError(NtpError):
    """Reply is not a well-formed 48-byte packet"""


class Mode(IntEnum):
    RESERVED = 0
    SYMMETRIC_ACTIVE = 1
    SYMMETRIC_PASSIVE = 2
    CLIENT = 3
    SERVER = 4
    BROADCAST = 5
    CONTROL = 6
    RESERVED_PRIVATE = 7


# LI (bits 7-6), VN (bits 5-3), Mode (bits 2-0) share the first byte

def set_mode(li_vn_mode: int, mode: int) -> int:
    return (li_vn_mode & 0xF8) | (mode & 0x07)


def set_version(li_vn_mode: int, version: int) -> int:
    return (li_vn_mode & 0xC7) | ((version & 0x07) << 3)


def set_leap(li_vn_mode: int, leap: int) -> int:
    return (li_vn_mode & 0x3F) | ((leap & 0x03) << 6)


def get_mode(li_vn_mode: int) -> int:
    return li_vn_mode & 0x07


def get_version(li_vn_mode: int) -> int:
    return (li_vn_mode >> 3) & 0x07


def get_leap(li_vn_mode: int) -> int:
    return (li_vn_mode >> 6) & 0x03


def check_version(version: int) -> None:
    """Raise NtpVersionError unless version is 3 or 4"""
    if version not in SUPPORTED_VERSIONS:
        raise NtpVersionError(f"invalid NTP version: {version} (expected 3 or 4)")


@dataclass(frozen=True)
class NtpTimestamp:
    """64-bit NTP timestamp: seconds since 1900 plus a 1/2^32 s fraction.

    Both halves are unsigned 32-bit values and wrap independently. No era
    handling is done, so values past 2036 are read as the 1900 era.
    """
    seconds: int = 0
    fraction: int = 0

    def __post_init__(self):
        object.__setattr__(self, "seconds", self.seconds & 0xFFFFFFFF)
        object.__setattr__(self, "fraction", self.fraction & 0xFFFFFFFF)

    def to_ns(self) -> int:
        """Nanoseconds since 1900-01-01T00:00:00Z"""
        return self.seconds * NS_PER_SEC + ((self.fraction * NS_PER_SEC) >> 32)

    def to_unix_ns(self) -> int:
        """Nanoseconds since the Unix epoch (negative before 1970)"""
        return self.to_ns() - NTP_UNIX_EPOCH_DIFF * NS_PER_SEC

    def to_datetime(self) -> datetime:
        """Aware UTC datetime, truncated to microseconds"""
        sec, nsec = divmod(self.to_ns(), NS_PER_SEC)
        return NTP_EPOCH + timedelta(seconds=sec, microseconds=nsec // 1000)

    @classmethod
    def from_unix_ns(cls, unix_ns: int) -> "NtpTimestamp":
        sec, nsec = divmod(unix_ns, NS_PER_SEC)
        return cls(sec + NTP_UNIX_EPOCH_DIFF, (nsec << 32) // NS_PER_SEC)


@dataclass
class Packet:
    """NTP packet header, 48 bytes on the wire, network byte order"""
    li_vn_mode: int = 0
    stratum: int = 0
    poll: int = 0
    precision: int = 0
    root_delay: int = 0
    root_dispersion: int = 0
    reference_id: int = 0
    reference_time: NtpTimestamp = field(default_factory=NtpTimestamp)
    origin_time: NtpTimestamp = field(default_factory=NtpTimestamp)
    receive_time: NtpTimestamp = field(default_factory=NtpTimestamp)
    transmit_time: NtpTimestamp = field(default_factory=NtpTimestamp)

    @property
    def leap(self) -> int:
        return get_leap(self.li_vn_mode)

    @property
    def version(self) -> int:
        return get_version(self.li_vn_mode)

    @property
    def mode(self) -> Mode:
        return Mode(get_mode(self.li_vn_mode))

    @property
    def root_delay_seconds(self) -> float:
        # 16.16 fixed point
        return self.root_delay / 65536.0

    @property
    def root_dispersion_seconds(self) -> float:
        return self.root_dispersion / 65536.0

    def encode(self) -> bytes:
        """Serialize to exactly NTP_PACKET_SIZE bytes"""
        return struct.pack(
            PACKET_FORMAT,
            self.li_vn_mode, self.stratum, self.poll, self.precision,
            self.root_delay, self.root_dispersion, self.reference_id,
            self.reference_time.seconds, self.reference_time.fraction,
            self.origin_time.seconds, self.origin_time.fraction,
            self.receive_time.seconds, self.receive_time.fraction,
            self.transmit_time.seconds, self.transmit_time.fraction,
        )

    @classmethod
    def decode(cls, data: bytes) -> "Packet":
        """Parse a packet, raising NtpPacketError unless data is 48 bytes"""
        if len(data) != NTP_PACKET_SIZE:
            raise NtpPacketError(
                f"NTP packet must be {NTP_PACKET_SIZE} bytes, got {len(data)}")
        values = struct.unpack(PACKET_FORMAT, data)
        stamps = [NtpTimestamp(values[i], values[i + 1]) for i in range(7, 15, 2)]
        return cls(*values[:7], *stamps)


def encode_request(version: int = DEFAULT_VERSION) -> bytes:
    """Build client request packet (48 bytes)"""
    check_version(version)
    packet = Packet()
    packet.li_vn_mode = set_mode(packet.li_vn_mode, Mode.CLIENT)
    packet.li_vn_mode = set_version(packet.li_vn_mode, version)
    return packet.encode()


def decode_reply(data: bytes) -> Packet:
    """Decode server reply into a fresh Packet"""
    return Packet.decode(data)


@dataclass(frozen=True)
class Estimate:
    delay: int
    network_delay: int
    offset: int


def _half(value):
    # Truncate toward zero, like a duration division
    if isinstance(value, int):
        return -(-value // 2) if value < 0 else value // 2
    return value / 2


def estimate(t1, t2, t3, t4) -> Estimate:
    """
    Derive delay and offset from the four exchange instants.

    t1: local send, t2: server receive, t3: server transmit, t4: local
    receive, all in the same unit (nanoseconds in this module). A positive
    offset means the local clock is behind the server.
    """
    delay = (t4 - t1) - (t3 - t2)
    network_delay = _half(delay)
    offset = (t2 - t1) - network_delay
    return Estimate(delay=delay, network_delay=network_delay, offset=offset)


def wall_clock_ns() -> int:
    """Get current time in nanoseconds since epoch"""
    return time.time_ns()


def unix_ns_to_local(unix_ns: int) -> datetime:
    sec, nsec = divmod(unix_ns, NS_PER_SEC)
    utc = datetime.fromtimestamp(sec, tz=timezone.utc)
    return (utc + timedelta(microseconds=nsec // 1000)).astimezone()


@dataclass
class Request:
    """Parameters of a single query"""
    host: str
    port: int = DEFAULT_NTP_PORT
    version: int = DEFAULT_VERSION
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class Response:
    """Result of query_detailed(); error is None on success"""
    local_time: Optional[datetime] = None
    remote_time: Optional[datetime] = None
    offset: Optional[timedelta] = None
    delay: Optional[timedelta] = None
    stratum: int = 0
    estimate: Optional[Estimate] = None
    packet: Optional[Packet] = None
    error: Optional[NtpError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class UdpTransport:
    """Blocking UDP transport on top of the socket module.

    A deadline set on a socket bounds every later write and read on it, so
    the whole exchange shares one time budget.
    """

    def __init__(self):
        self._deadlines = {}

    def resolve(self, host: str, port: int):
        try:
            addr_info = socket.getaddrinfo(host, port, socket.AF_UNSPEC, socket.SOCK_DGRAM)
        except (UnicodeError, ValueError) as e:
            # idna encoding rejects over-long or empty labels before any lookup
            raise socket.gaierror(f"invalid host name {host!r}: {e}") from e
        if not addr_info:
            raise socket.gaierror(f"no address for {host}:{port}")
        family, socktype, proto, _, sockaddr = addr_info[0]
        return family, socktype, proto, sockaddr

    def open(self, address) -> socket.socket:
        family, socktype, proto, sockaddr = address
        sock = socket.socket(family, socktype, proto)
        try:
            sock.connect(sockaddr)
        except OSError:
            sock.close()
            raise
        return sock

    def set_deadline(self, sock: socket.socket, deadline: float) -> None:
        """deadline is an instant on the time.monotonic() clock"""
        self._deadlines[sock] = deadline

    def _arm(self, sock: socket.socket) -> None:
        deadline = self._deadlines.get(sock)
        if deadline is None:
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise socket.timeout("deadline exceeded")
        sock.settimeout(remaining)

    def write_exact(self, sock: socket.socket, data: bytes) -> None:
        self._arm(sock)
        sent = sock.send(data)
        if sent != len(data):
            raise NtpWriteError(f"short write: {sent} of {len(data)} bytes")

    def read_exact(self, sock: socket.socket, n: int) -> bytes:
        """Read one datagram of at most n bytes; the caller checks the length"""
        self._arm(sock)
        return sock.recv(n)

    def close(self, sock: socket.socket) -> None:
        self._deadlines.pop(sock, None)
        sock.close()


class QueryState(Enum):
    IDLE = "idle"
    AWAITING_SEND = "awaiting_send"
    AWAITING_REPLY = "awaiting_reply"
    DECODED = "decoded"
    FAILED = "failed"


class Exchange:
    """
    One request/response cycle against a transport.

    Moves IDLE -> AWAITING_SEND -> AWAITING_REPLY -> DECODED, or to FAILED
    from any state with the error kept in self.error. Not reusable.
    """

    def __init__(self, request: Request, transport: Any):
        self.request = request
        self.transport = transport
        self.state = QueryState.IDLE
        self.error: Optional[NtpError] = None
        self.reply: Optional[Packet] = None
        self.sent_ns: Optional[int] = None
        self.received_ns: Optional[int] = None

    def run(self) -> Packet:
        if self.state is not QueryState.IDLE:
            raise RuntimeError(f"exchange already {self.state.value}")
        try:
            return self._run()
        except NtpError as e:
            self.state = QueryState.FAILED
            self.error = e
            raise

    def _io(self, failure, func, *args):
        try:
            return func(*args)
        except NtpError:
            raise
        except socket.timeout as e:
            raise NtpTimeoutError(
                f"no reply from {self.request.host} within {self.request.timeout}s") from e
        except OSError as e:
            raise failure(f"{self.request.host}:{self.request.port}: {e}") from e

    def _run(self) -> Packet:
        request = self.request
        transport = self.transport

        # Rejected before any network I/O
        data = encode_request(request.version)
        self.state = QueryState.AWAITING_SEND

        address = self._io(NtpResolutionError, transport.resolve, request.host, request.port)
        sock = self._io(NtpConnectError, transport.open, address)
        try:
            self._io(NtpConnectError, transport.set_deadline, sock,
                     time.monotonic() + request.timeout)
            self.sent_ns = wall_clock_ns()
            self._io(NtpWriteError, transport.write_exact, sock, data)
            self.state = QueryState.AWAITING_REPLY
            reply = self._io(NtpReadError, transport.read_exact, sock, NTP_PACKET_SIZE)
            self.received_ns = wall_clock_ns()
        finally:
            transport.close(sock)

        self.reply = decode_reply(reply)
        self.state = QueryState.DECODED
        return self.reply


def query_detailed(request: Request, transport: Any = None) -> Response:
    """Run one exchange and return local/remote time, offset and stratum"""
    exchange = Exchange(request, transport if transport is not None else UdpTransport())
    try:
        reply = exchange.run()
    except NtpError as e:
        return Response(error=e)

    result = estimate(
        exchange.sent_ns,
        reply.receive_time.to_unix_ns(),
        reply.transmit_time.to_unix_ns(),
        exchange.received_ns,
    )
    return Response(
        local_time=unix_ns_to_local(exchange.sent_ns),
        remote_time=reply.receive_time.to_datetime().astimezone(),
        offset=timedelta(microseconds=result.offset / 1000),
        delay=timedelta(microseconds=result.delay / 1000),
        stratum=reply.stratum,
        estimate=result,
        packet=reply,
    )


def query_with(request: Request,
               transport: Any = None) -> Tuple[Optional[datetime], Optional[NtpError]]:
    """Return (server receive time in local time, None) or (None, error)"""
    response = query_detailed(request, transport)
    return response.remote_time, response.error


def query(host: str, transport: Any = None) -> Tuple[Optional[datetime], Optional[NtpError]]:
    """query_with() using port 123, version 4 and a 5 second timeout"""
    return query_with(Request(host), transport)


def query_many(hosts: Iterable[str],
               port: int = DEFAULT_NTP_PORT,
               version: int = DEFAULT_VERSION,
               timeout: float = DEFAULT_TIMEOUT,
               max_workers: Optional[int] = None,
               transport_factory=UdpTransport) -> Iterator[Tuple[str, Response]]:
    """Query several servers at once, yielding (host, response) as they finish"""
    hosts = list(hosts)
    if not hosts:
        return
    with ThreadPoolExecutor(max_workers=max_workers or len(hosts)) as pool:
        futures = {
            pool.submit(query_detailed, Request(host, port, version, timeout),
                        transport_factory()): host
            for host in hosts
        }
        for future in as_completed(futures):
            yield futures[future], future.result()


class Config:
    """Configuration for the command line client"""
    def __init__(self):
        self.server = DEFAULT_SERVER
        self.port = DEFAULT_NTP_PORT
        self.version = DEFAULT_VERSION
        self.timeout_ms = DEFAULT_TIMEOUT_MS
        self.retries = DEFAULT_RETRIES
        self.verbose = False
        self.use_syslog = False

    def to_request(self) -> Request:
        return Request(self.server, self.port, self.version, self.timeout_ms / 1000.0)


def stderr_log(message: str) -> None:
    """Log message to stderr with timestamp"""
    now = datetime.now()
    timestamp = now.strftime("%Y-%m-%d %H:%M:%S")
    print(f"{timestamp} {message}", file=sys.stderr, flush=True)


def syslog_log(priority: int, message: str) -> None:
    """Log message to syslog"""
    syslog.syslog(priority, message)


def format_time(dt: datetime) -> str:
    """Format datetime as ISO string in UTC"""
    utc = dt.astimezone(timezone.utc)
    return f"{utc.strftime('%Y-%m-%dT%H:%M:%S')}+0000.{utc.microsecond // 1000:03d}"


def run(config: Config, transport: Any = None) -> int:
    """Main logic - returns exit code"""
    if config.verbose:
        stderr_log(f"DEBUG Using server: {config.server}:{config.port} (NTPv{config.version})")
        stderr_log(f"DEBUG Timeout: {config.timeout_ms} ms, Retries: {config.retries}, "
                   f"Syslog: {'on' if config.use_syslog else 'off'}")

    if config.use_syslog:
        syslog.openlog("ntpquery", syslog.LOG_PID | syslog.LOG_CONS, syslog.LOG_USER)

    request = config.to_request()

    # Each attempt is a complete, independent query
    response = None
    attempts = 0
    for attempt in range(config.retries):
        attempts = attempt + 1
        if config.verbose:
            stderr_log(f"DEBUG Attempt ({attempts}) at NTP query on {config.server} ...")

        response = query_detailed(request, transport)
        if response.ok:
            break

        if config.verbose:
            stderr_log(f"DEBUG Attempt ({attempts}) failed: {response.error}")
        if isinstance(response.error, NtpVersionError):
            break

        # Small backoff before retry
        if attempts < config.retries:
            time.sleep(0.2)

    if response is None or not response.ok:
        error = response.error if response is not None else "no attempt made"
        stderr_log(f"ERROR Failed to contact NTP server {config.server} "
                   f"after {attempts} attempts: {error}")
        if config.use_syslog:
            syslog_log(syslog.LOG_ERR,
                       f"NTP query failed for {config.server} after {attempts} attempts")
        return 2

    offset_ms = response.estimate.offset / 1e6
    roundtrip_ms = response.estimate.delay / 1e6

    if config.verbose:
        stderr_log(f"DEBUG Server: {config.server}")
        stderr_log(f"DEBUG Local time: {format_time(response.local_time)}")
        stderr_log(f"DEBUG Remote time: {format_time(response.remote_time)}")
        stderr_log(f"DEBUG Stratum: {response.stratum}")
        stderr_log(f"DEBUG Estimated roundtrip(ms): {roundtrip_ms:.3f}")
        stderr_log(f"DEBUG Estimated offset remote - local(ms): {offset_ms:.3f}")

        if config.use_syslog:
            syslog_log(syslog.LOG_INFO,
                       f"NTP server={config.server} stratum={response.stratum} "
                       f"offset_ms={offset_ms:.3f} rtt_ms={roundtrip_ms:.3f}")

    if response.packet.mode != Mode.SERVER:
        stderr_log(f"WARNING Unexpected mode in NTP response: {int(response.packet.mode)}")

    if response.stratum == 0:
        stderr_log("WARNING Stratum 0 in NTP response (unsynchronized or kiss-o'-death)")
        if config.use_syslog:
            syslog_log(syslog.LOG_WARNING, f"Stratum 0 reply from {config.server}")

    # Validate roundtrip
    if roundtrip_ms < 0 or roundtrip_ms > MAX_ROUNDTRIP_MS:
        stderr_log(f"ERROR Invalid roundtrip time: {roundtrip_ms:.3f} ms")
        if config.use_syslog:
            syslog_log(syslog.LOG_ERR, f"Invalid roundtrip time: {roundtrip_ms:.3f} ms")
        return 1

    print(f"{format_time(response.remote_time)} offset={offset_ms:+.3f}ms "
          f"delay={roundtrip_ms:.3f}ms stratum={response.stratum}", flush=True)
    return 0


def print_usage():
    """Print usage message"""
    print("Usage: ntpquery [-t timeout_ms] [-r retries] [-p port] [-V version] [-v] [-s] [-h] [ntp server]",
          file=sys.stderr)
    print("  server       NTP server to query (default: pool.ntp.org)", file=sys.stderr)
    print("  -t timeout   Timeout in ms (default: 5000)", file=sys.stderr)
    print("  -r retries   Number of retries (default: 3)", file=sys.stderr)
    print("  -p port      Server port (default: 123)", file=sys.stderr)
    print("  -V version   NTP version, 3 or 4 (default: 4)", file=sys.stderr)
    print("  -v           Verbose output", file=sys.stderr)
    print("  -s           Enable syslog logging", file=sys.stderr)
    print("  -h           Show this help message", file=sys.stderr)
    sys.exit(0)


def parse_args(argv) -> Config:
    """Build a Config from command line arguments (without program name)"""
    config = Config()
    i = 0

    while i < len(argv):
        arg = argv[i]

        if arg == "-h":
            print_usage()
        elif arg == "-t" and i + 1 < len(argv):
            try:
                config.timeout_ms = max(1, min(6000, int(argv[i + 1])))
                i += 1
            except ValueError:
                pass
        elif arg == "-r" and i + 1 < len(argv):
            try:
                config.retries = max(1, min(10, int(argv[i + 1])))
                i += 1
            except ValueError:
                pass
        elif arg == "-p" and i + 1 < len(argv):
            try:
                config.port = max(1, min(65535, int(argv[i + 1])))
                i += 1
            except ValueError:
                pass
        elif arg == "-V" and i + 1 < len(argv):
            try:
                config.version = int(argv[i + 1])
                i += 1
            except ValueError:
                pass
        elif arg.startswith("-") and not arg.startswith("--"):
            # Handle combined flags like -vs
            for c in arg[1:]:
                if c == "h":
                    print_usage()
                elif c == "v":
                    config.verbose = True
                elif c == "s":
                    config.use_syslog = True
        elif not arg.startswith("-"):
            config.server = arg

        i += 1

    return config


def main():
    """Parse arguments and run"""
    sys.exit(run(parse_args(sys.argv[1:])))


if __name__ == "__main__":
    main()
