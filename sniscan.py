#!/usr/bin/env python3
#----------------------------------------------------------------------------
# SNISCAN – TLS/SNI front-address prober
#----------------------------------------------------------------------------
#
# Probes IPv4 addresses on the TLS port and reports which ones complete a TLS
# handshake while the client declares an arbitrary hostname through SNI.
#
# Execution examples:
#
# 1. Probe a single address with one candidate domain.
#    Command: python3 sniscan.py 93.184.216.34 --domains example.org --timeout 5s
#    Outcome: prints the address on stdout when the handshake completes.
#
# 2. Sweep a CIDR block and keep accepted addresses in a file.
#    Command: python3 sniscan.py 104.16.0.0/24 -d cdn.example.net,www.example.org -c 200 -o accepted.txt
#    Outcome: tries each domain in order per address, 200 probes in flight at most.
#
# 3. Resume an interrupted sweep from a list of ranges.
#    Command: python3 sniscan.py --input ranges.txt --resume logs/ranges.resume.log --verbose
#    Outcome: addresses already present in the resume log are skipped, failures
#    are reported with their reason.
#
# 4. Interactive input with packet capture (pcap needs root and scapy).
#    Command: sudo python3 sniscan.py --pcap logs/probes.pcap
#    Outcome: reads addresses/ranges from the terminal until Ctrl-D or Ctrl-C.

from __future__ import annotations

import argparse
import asyncio
import bisect
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import enum
import functools
import inspect
import ipaddress
import logging
import os
import re
import signal
import socket
import ssl
import stat
import sys
import time
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    TextIO,
    Tuple,
    Union,
)

import psutil
from termcolor import colored

if sys.platform != "win32":
    import resource  # type: ignore[attr-defined]
else:
    resource = None  # type: ignore[assignment]


# Scapy is only needed for --pcap. When it cannot be imported the option is
# refused at startup with a clear message.
try:
    import scapy.all as scapy
    scapy.conf.use_pcap = True
    SCAPY_AVAILABLE: bool = True
except Exception:
    SCAPY_AVAILABLE = False


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


# -----------------------------------------------------------------------------
# Defaults and environment overrides
# -----------------------------------------------------------------------------

DEFAULTS: Dict[str, object] = {
    "CONCURRENCY": int(os.environ.get("SNISCAN_CONCURRENCY", "100")),
    "TIMEOUT": os.environ.get("SNISCAN_TIMEOUT", "5s"),
    "DOMAINS": os.environ.get("SNISCAN_DOMAINS", "example.org"),
    "PORT": int(os.environ.get("SNISCAN_PORT", "443")),
    "RESUME": os.environ.get("SNISCAN_RESUME", ""),
}

DEFAULT_TIMEOUT_SECONDS: float = 5.0

FD_LIMIT_SAFETY_MARGIN: int = 32

# Yield to the event loop after this many consecutive skipped addresses so
# an interrupt is still serviced while a large recorded range is filtered.
DEDUP_YIELD_INTERVAL: int = 4096

OUTCOME_OK = "OK"
OUTCOME_FAILURE = "Failure"
RECORD_OUTCOMES = (OUTCOME_OK, OUTCOME_FAILURE)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PREREQUISITE = 2
EXIT_INTERRUPTED = 130


def default_resume_path(working_directory: Optional[str] = None) -> str:
    """Return the resume log location derived from the working directory."""

    directory = os.path.abspath(working_directory or os.getcwd())
    label = os.path.basename(directory.rstrip(os.sep)) or "root"
    return os.path.join(directory, f"{label}.sniscan-resume.log")


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------

class SniScanError(Exception):
    """Base class for scanner errors."""


class InvalidInputError(SniScanError):
    """Raised when no usable address source is available."""


class InvalidAddressError(SniScanError, ValueError):
    """Raised when a token is not an IPv4 address, CIDR block or range."""


class ResumeLoadError(SniScanError):
    """Raised when a resume log line cannot be parsed."""


class ProbeError(SniScanError):
    """Base class for per-address probe failures carried in events."""


class ConnectError(ProbeError):
    """The TCP connection to the TLS port could not be established."""


class HandshakeError(ProbeError):
    """Every candidate domain failed the TLS handshake."""


class ProbeTimeoutError(ProbeError, TimeoutError):
    """The address-level deadline elapsed before any handshake completed."""


# -----------------------------------------------------------------------------
# Data model
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ProbeConfiguration:
    """Parameters shared by every probe attempt of a run."""

    domains: Tuple[str, ...]
    concurrency: int = 100
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    port: int = 443
    local_address: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.domains:
            raise ValueError("at least one candidate domain is required")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")

    @property
    def local_addr(self) -> Optional[Tuple[str, int]]:
        if not self.local_address:
            return None
        return (self.local_address, 0)


@dataclass(frozen=True)
class ProbeEvent:
    """Outcome of one probed address, the unit delivered to consumers."""

    address: ipaddress.IPv4Address
    success: bool
    reason: Optional[BaseException] = None
    domain: Optional[str] = None
    duration_ms: int = 0

    @property
    def outcome(self) -> str:
        return OUTCOME_OK if self.success else OUTCOME_FAILURE

    def describe_reason(self) -> str:
        if self.reason is None:
            return ""
        text = str(self.reason)
        label = type(self.reason).__name__
        return f"{label}: {text}" if text else label


@dataclass
class ProbeAttempt:
    """Transient per-address context, created on dispatch and dropped on settlement."""

    address: ipaddress.IPv4Address
    domains: Tuple[str, ...]
    deadline: float
    started: float = field(default_factory=time.perf_counter)
    outcome: Optional[ProbeEvent] = None

    def settle(self, success: bool, reason: Optional[BaseException] = None,
               domain: Optional[str] = None) -> ProbeEvent:
        duration_ms = int((time.perf_counter() - self.started) * 1000)
        self.outcome = ProbeEvent(self.address, success, reason, domain, duration_ms)
        return self.outcome


@dataclass
class ScanStatistics:
    """Counters reported in the run summary."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    invalid_tokens: int = 0
    peak_in_flight: int = 0
    started_at: float = field(default_factory=time.perf_counter)
    finished_at: Optional[float] = None

    @property
    def delivered(self) -> int:
        return self.succeeded + self.failed

    @property
    def elapsed_seconds(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.perf_counter()
        return max(0.0, end - self.started_at)

    def count(self, event: ProbeEvent) -> None:
        if event.success:
            self.succeeded += 1
        else:
            self.failed += 1


# -----------------------------------------------------------------------------
# Time, duration and limit helpers
# -----------------------------------------------------------------------------

def utc_now_str() -> str:

    now_utc = datetime.now(timezone.utc)
    return now_utc.strftime("%Y-%m-%d %H:%M:%S")


_DURATION_RE = re.compile(r"(?:\d+(?:\.\d+)?(?:ms|s|m|h))+")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS: Dict[str, float] = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(text: Optional[str], default: float = DEFAULT_TIMEOUT_SECONDS) -> float:
    """Convert ``500ms``, ``5s``, ``1m30s`` or a bare number of seconds to seconds.

    Unparsable or non-positive input falls back to *default*.
    """

    if text is None:
        return default
    value = str(text).strip().lower().replace(" ", "")
    if not value:
        return default

    seconds: Optional[float] = None
    try:
        seconds = float(value)
    except ValueError:
        if _DURATION_RE.fullmatch(value):
            seconds = sum(
                float(amount) * _DURATION_UNITS[unit]
                for amount, unit in _DURATION_PART_RE.findall(value)
            )

    if seconds is None or seconds <= 0:
        logger.warning("Invalid timeout %r, using %ss", text, default)
        return default
    return seconds


def parse_domain_list(text: Optional[str]) -> Tuple[str, ...]:
    """Split a comma separated domain list, keeping order and dropping repeats."""

    domains: List[str] = []
    for part in (text or "").split(","):
        domain = part.strip().rstrip(".").lower()
        if domain and domain not in domains:
            domains.append(domain)
    return tuple(domains)


# Return the soft RLIMIT_NOFILE value when available.
def query_process_fd_soft_limit() -> Optional[int]:

    if resource is None:
        return None

    try:
        soft_limit, _ = resource.getrlimit(resource.RLIMIT_NOFILE)  # type: ignore[arg-type]
    except (OSError, ValueError):
        return None

    infinity = getattr(resource, "RLIM_INFINITY", None)
    if infinity is not None and soft_limit == infinity:
        return None
    if soft_limit <= 0:
        return None
    return int(soft_limit)


# Clamp concurrency so each in-flight probe can hold a socket.
def apply_fd_limit_guardrail(desired_concurrency: int) -> Tuple[int, Optional[int]]:

    sanitized = max(1, int(desired_concurrency))
    soft_limit = query_process_fd_soft_limit()
    if soft_limit is None:
        return sanitized, None

    dynamic_margin = min(max(FD_LIMIT_SAFETY_MARGIN, soft_limit // 10), 256)
    max_allowed = max(1, soft_limit - dynamic_margin)
    if sanitized <= max_allowed:
        return sanitized, None
    return max_allowed, soft_limit


def resolve_interface_ipv4(interface_name: str) -> str:
    """Return the first IPv4 address bound to *interface_name*."""

    addresses = psutil.net_if_addrs().get(interface_name)
    if not addresses:
        raise InvalidInputError(f"unknown network interface {interface_name!r}")
    for address in addresses:
        if getattr(address, "family", None) == socket.AF_INET and address.address:
            return address.address
    raise InvalidInputError(f"interface {interface_name!r} has no IPv4 address")


# -----------------------------------------------------------------------------
# Range expansion
# -----------------------------------------------------------------------------

_SHORT_RANGE_END_RE = re.compile(r"\d{1,3}")


def _parse_ipv4(text: str, token: str) -> ipaddress.IPv4Address:
    try:
        return ipaddress.IPv4Address(text)
    except ValueError as exc:
        raise InvalidAddressError(f"invalid address {token!r}: {exc}") from exc


def parse_range_token(token: str) -> Tuple[int, int]:
    """Validate a range token and return its first and last address as integers.

    Accepted forms are a single address (``10.0.0.1``), a CIDR block
    (``10.0.0.0/24``, host bits are ignored), an explicit range
    (``10.0.0.1-10.0.1.255``) and a last-octet range (``10.0.0.1-20``).
    """

    text = (token or "").strip()
    if not text:
        raise InvalidAddressError("empty address token")

    if "/" in text:
        try:
            network = ipaddress.IPv4Network(text, strict=False)
        except ValueError as exc:
            raise InvalidAddressError(f"invalid CIDR block {token!r}: {exc}") from exc
        return int(network.network_address), int(network.broadcast_address)

    if "-" in text:
        left, right = (part.strip() for part in text.split("-", 1))
        start = _parse_ipv4(left, token)
        if _SHORT_RANGE_END_RE.fullmatch(right):
            last_octet = int(right)
            if last_octet > 255:
                raise InvalidAddressError(f"invalid range end in {token!r}")
            end_value = (int(start) & 0xFFFFFF00) | last_octet
        else:
            end_value = int(_parse_ipv4(right, token))
        if end_value < int(start):
            raise InvalidAddressError(f"range end precedes start in {token!r}")
        return int(start), end_value

    address = _parse_ipv4(text, token)
    return int(address), int(address)


def range_size(token: str) -> int:
    """Return how many addresses *token* covers without expanding it."""

    first, last = parse_range_token(token)
    return last - first + 1


def _iterate_addresses(first: int, last: int) -> Iterator[ipaddress.IPv4Address]:
    current = first
    while current <= last:
        yield ipaddress.IPv4Address(current)
        current += 1


def expand_range_token(token: str) -> Iterator[ipaddress.IPv4Address]:
    """Validate *token* now and return a lazy ascending iterator over its addresses."""

    first, last = parse_range_token(token)
    return _iterate_addresses(first, last)


# -----------------------------------------------------------------------------
# Input sources
# -----------------------------------------------------------------------------

def clean_token(raw_line: Union[str, bytes]) -> Optional[str]:
    """Return the trimmed token on *raw_line*, or None for blank and comment lines."""

    if isinstance(raw_line, bytes):
        raw_line = raw_line.decode("utf-8", errors="replace")
    line = raw_line.strip()
    if not line or line.startswith("#"):
        return None
    return line


async def iter_tokens_from_lines(lines: Iterable[Union[str, bytes]]) -> AsyncIterator[str]:

    for raw_line in lines:
        token = clean_token(raw_line)
        if token is not None:
            yield token


async def iter_tokens_from_file(source: Union[str, TextIO]) -> AsyncIterator[str]:
    # Read a path or an already open text handle one line at a time.

    if isinstance(source, str):
        with open(source, mode="r", encoding="utf-8", errors="replace") as handle:
            async for token in iter_tokens_from_lines(handle):
                yield token
        return
    async for token in iter_tokens_from_lines(source):
        yield token


async def iter_tokens_from_stream(reader: asyncio.StreamReader) -> AsyncIterator[str]:
    # Pull lines from a byte stream until EOF.

    while True:
        raw_line = await reader.readline()
        if not raw_line:
            return
        token = clean_token(raw_line)
        if token is not None:
            yield token


def open_token_source(arguments: Optional[Sequence[str]] = None,
                      input_file: Optional[Union[str, TextIO]] = None,
                      stream: Optional[asyncio.StreamReader] = None) -> AsyncIterator[str]:
    """Pick the token source: literal arguments, then a file, then a byte stream."""

    if arguments:
        return iter_tokens_from_lines(arguments)
    if input_file is not None:
        return iter_tokens_from_file(input_file)
    if stream is not None:
        return iter_tokens_from_stream(stream)
    raise InvalidInputError("no input file, address arguments or input stream available")


async def connect_stdin_reader(
        pipe: Any = None) -> Tuple[asyncio.StreamReader, asyncio.ReadTransport]:
    """Wrap stdin (a pipe or a terminal) into an asyncio stream reader.

    The loop reads from a duplicate descriptor, so closing the transport
    leaves *pipe* open. Hand the transport to :func:`close_stdin_reader`
    when the run ends.
    """

    source = pipe if pipe is not None else sys.stdin
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    duplicate = os.fdopen(os.dup(source.fileno()), mode="rb", buffering=0)
    try:
        transport, _protocol = await loop.connect_read_pipe(lambda: protocol, duplicate)
    except BaseException:
        duplicate.close()
        raise
    return reader, transport


def close_stdin_reader(transport: asyncio.BaseTransport, pipe: Any = None) -> None:
    """Close *transport* and put the shared descriptor back in blocking mode."""

    source = pipe if pipe is not None else sys.stdin
    transport.close()
    # The duplicate shares the open file description, so O_NONBLOCK set by
    # the loop is visible on the original descriptor too.
    try:
        os.set_blocking(source.fileno(), True)
    except (OSError, ValueError) as exc:
        logger.debug("Could not restore blocking mode on stdin: %s", exc)


def stdin_is_regular_file(handle: Any) -> bool:

    try:
        mode = os.fstat(handle.fileno()).st_mode
    except (AttributeError, OSError, ValueError):
        return False
    return stat.S_ISREG(mode)


# -----------------------------------------------------------------------------
# Scan record (resume log) and dedup filter
# -----------------------------------------------------------------------------

def parse_scan_record_lines(lines: Iterable[str]) -> Dict[int, str]:
    """Parse ``address,OUTCOME`` lines; later lines override earlier ones."""

    outcomes: Dict[int, str] = {}
    for line_number, raw_line in enumerate(lines, start=1):
        line = raw_line.strip()
        if not line:
            continue
        parts = line.split(",")
        if len(parts) != 2:
            raise ResumeLoadError(f"line {line_number}: expected 'address,outcome', got {line!r}")
        address_text, outcome = (part.strip() for part in parts)
        if outcome not in RECORD_OUTCOMES:
            raise ResumeLoadError(f"line {line_number}: unknown outcome {outcome!r}")
        try:
            address = ipaddress.IPv4Address(address_text)
        except ValueError as exc:
            raise ResumeLoadError(f"line {line_number}: {exc}") from exc
        outcomes[int(address)] = outcome
    return outcomes


class ScanRecord:
    """Append-only address -> outcome log backing resumable runs.

    The lookup map is filled once by :meth:`load` and stays read-only for the
    rest of the run; outcomes settled during the run only go to the log file.
    """

    def __init__(self, path: Optional[str] = None,
                 outcomes: Optional[Dict[int, str]] = None) -> None:
        self.path = path
        self._outcomes: Dict[int, str] = dict(outcomes or {})
        self._handle: Optional[TextIO] = None
        self.appended = 0

    @classmethod
    def load(cls, path: Optional[str]) -> "ScanRecord":
        """Read *path* into a new record. A corrupt log yields an empty record."""

        record = cls(path)
        if not path or not os.path.exists(path):
            return record
        try:
            with open(path, mode="r", encoding="utf-8", errors="replace") as handle:
                record._outcomes = parse_scan_record_lines(handle)
        except (ResumeLoadError, OSError) as exc:
            logger.warning("Ignoring resume log %s (%s); starting with an empty record", path, exc)
            record._outcomes = {}
        else:
            logger.debug("Loaded %d entries from resume log %s", len(record._outcomes), path)
        return record

    def __len__(self) -> int:
        return len(self._outcomes)

    def __contains__(self, address: object) -> bool:
        return self._key(address) in self._outcomes

    def outcome_for(self, address: Union[str, ipaddress.IPv4Address]) -> Optional[str]:
        return self._outcomes.get(self._key(address))

    @staticmethod
    def _key(address: object) -> int:
        if isinstance(address, ipaddress.IPv4Address):
            return int(address)
        if isinstance(address, int):
            return address
        try:
            return int(ipaddress.IPv4Address(str(address)))
        except ValueError:
            return -1

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def open(self) -> "ScanRecord":
        """Open the log for appending. Raises OSError when it cannot be written."""

        if self._handle is None and self.path:
            ensure_parent_directory_exists(self.path)
            self._handle = open(self.path, mode="a", encoding="utf-8")
        return self

    def append(self, address: Union[str, ipaddress.IPv4Address], success: bool) -> None:
        """Persist one settled outcome and flush it to disk."""

        if self._handle is None:
            return
        outcome = OUTCOME_OK if success else OUTCOME_FAILURE
        self._handle.write(f"{address},{outcome}\n")
        self._handle.flush()
        self.appended += 1

    def close(self) -> None:
        if self._handle is None:
            return
        try:
            self._handle.flush()
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "ScanRecord":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class DedupFilter:
    """Skips addresses already recorded, or covered by a token expanded earlier in this run.

    Expanded tokens are kept as sorted, merged ``[first, last]`` intervals, so
    the filter grows with the number of tokens and not with their size. An
    address inside the token being expanded is not yet covered; one token
    never yields the same address twice.
    """

    def __init__(self, record: ScanRecord) -> None:
        self._record = record
        self._starts: List[int] = []
        self._ends: List[int] = []

    def __len__(self) -> int:
        return len(self._starts)

    def covers(self, key: int) -> bool:
        index = bisect.bisect_right(self._starts, key) - 1
        return index >= 0 and key <= self._ends[index]

    def admit(self, address: ipaddress.IPv4Address) -> bool:
        key = int(address)
        return not (self.covers(key) or key in self._record)

    def remember(self, first: int, last: int) -> None:
        """Mark ``first..last`` as expanded, merging overlapping and adjacent intervals."""

        low = bisect.bisect_left(self._ends, first - 1)
        high = bisect.bisect_right(self._starts, last + 1)
        if low < high:
            first = min(first, self._starts[low])
            last = max(last, self._ends[high - 1])
        self._starts[low:high] = [first]
        self._ends[low:high] = [last]


async def iter_scan_targets(tokens: AsyncIterator[str],
                            dedup: DedupFilter,
                            statistics: ScanStatistics) -> AsyncIterator[ipaddress.IPv4Address]:
    """Expand tokens lazily and drop addresses the dedup filter rejects.

    Malformed tokens are logged and skipped.
    """

    try:
        async for token in tokens:
            try:
                first, last = parse_range_token(token)
            except InvalidAddressError as exc:
                statistics.invalid_tokens += 1
                logger.warning("Skipping %s", exc)
                continue

            skipped_in_a_row = 0
            for address in _iterate_addresses(first, last):
                if not dedup.admit(address):
                    statistics.skipped += 1
                    skipped_in_a_row += 1
                    if skipped_in_a_row % DEDUP_YIELD_INTERVAL == 0:
                        await asyncio.sleep(0)
                    continue
                skipped_in_a_row = 0
                yield address
            dedup.remember(first, last)
    finally:
        closer = getattr(tokens, "aclose", None)
        if closer is not None:
            await closer()


# -----------------------------------------------------------------------------
# TLS/SNI probe
# -----------------------------------------------------------------------------

def build_probe_ssl_context() -> ssl.SSLContext:
    """Client context that completes handshakes without validating the chain."""

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    context.set_alpn_protocols(["h2", "http/1.1"])
    return context


def describe_os_error(exc: BaseException) -> str:

    if isinstance(exc, OSError) and exc.strerror:
        return exc.strerror
    text = str(exc)
    return text or type(exc).__name__


async def _attempt_handshakes(attempt: ProbeAttempt,
                              configuration: ProbeConfiguration,
                              context: ssl.SSLContext) -> ProbeEvent:
    # One fresh TCP connection per candidate domain; the first completed
    # handshake settles the attempt.
    host = str(attempt.address)
    failures: List[str] = []

    for domain in attempt.domains:
        try:
            _reader, writer = await asyncio.open_connection(
                host=host,
                port=configuration.port,
                local_addr=configuration.local_addr,
            )
        except OSError as exc:
            return attempt.settle(
                False, ConnectError(f"{host}:{configuration.port} {describe_os_error(exc)}")
            )

        try:
            await writer.start_tls(context, server_hostname=domain)
        except (ssl.SSLError, OSError, EOFError) as exc:
            failures.append(f"{domain}: {describe_os_error(exc)}")
            continue
        finally:
            writer.transport.abort()

        return attempt.settle(True, domain=domain)

    return attempt.settle(False, HandshakeError("; ".join(failures)))


async def probe_address(address: ipaddress.IPv4Address,
                        configuration: ProbeConfiguration,
                        context: Optional[ssl.SSLContext] = None) -> ProbeEvent:
    """Probe one address, trying each candidate domain as SNI in order.

    The attempt's deadline bounds every connect and handshake together. On
    expiry the open connection is aborted and the event carries a
    :class:`ProbeTimeoutError`. Pass *context* to share one SSL context
    across probes.
    """

    loop = asyncio.get_running_loop()
    attempt = ProbeAttempt(
        address=address,
        domains=configuration.domains,
        deadline=loop.time() + configuration.timeout,
    )
    try:
        async with asyncio.timeout_at(attempt.deadline):
            return await _attempt_handshakes(
                attempt, configuration, context or build_probe_ssl_context()
            )
    except TimeoutError:
        return attempt.settle(
            False, ProbeTimeoutError(f"no handshake within {configuration.timeout:g}s")
        )


ProbeFunction = Callable[[ipaddress.IPv4Address, ProbeConfiguration], Awaitable[ProbeEvent]]


# -----------------------------------------------------------------------------
# Event stream: bounded probe pool with serialized, backpressured delivery
# -----------------------------------------------------------------------------

class StreamState(enum.Enum):
    IDLE = "idle"
    STARTED = "started"
    EMITTING = "emitting"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


TERMINAL_STATES = (StreamState.COMPLETED, StreamState.ERRORED, StreamState.CANCELLED)

_END_OF_EVENTS = object()

Callback = Callable[..., Any]


async def _invoke(callback: Optional[Callback], *args: Any) -> None:
    # Call a consumer callback and wait on any pending operation it returns.
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class ProbeStream:
    """Cancellable push stream of probe outcomes.

    Addresses flow from the token source through expansion and the dedup
    filter into a pool of at most ``configuration.concurrency`` in-flight
    probes. Settled events are delivered to ``on_next`` one at a time in
    completion order; when ``on_next`` returns an awaitable, the next
    delivery waits for it. Probing continues meanwhile and settled events
    are buffered.

    Lifecycle: ``on_start`` once, ``on_next`` per event, then exactly one of
    ``on_complete`` or ``on_error``, unless :meth:`unsubscribe` is called
    first, which suppresses both.
    """

    def __init__(self,
                 tokens: AsyncIterator[str],
                 configuration: ProbeConfiguration,
                 record: Optional[ScanRecord] = None,
                 probe: Optional[ProbeFunction] = None,
                 interactive: bool = False) -> None:
        self.configuration = configuration
        self.record = record if record is not None else ScanRecord()
        self.interactive = interactive
        self.statistics = ScanStatistics()
        self.state = StreamState.IDLE
        self._tokens = tokens
        if probe is None:
            probe = functools.partial(probe_address, context=build_probe_ssl_context())
        self._probe: ProbeFunction = probe
        self._settled: "asyncio.Queue[object]" = asyncio.Queue()
        self._in_flight: Set[asyncio.Task] = set()
        self._pump: Optional[asyncio.Task] = None
        self._admission: Optional[asyncio.Task] = None
        self._cancelled = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_start: Optional[Callback] = None
        self._on_next: Optional[Callback] = None
        self._on_complete: Optional[Callback] = None
        self._on_error: Optional[Callback] = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def subscribe(self,
                  on_next: Optional[Callback] = None,
                  on_start: Optional[Callback] = None,
                  on_complete: Optional[Callback] = None,
                  on_error: Optional[Callback] = None) -> "ProbeStream":
        """Start the run on the running loop. A stream can be subscribed once."""

        if self.state is not StreamState.IDLE or self._pump is not None:
            raise RuntimeError("stream already subscribed")
        self._on_start = on_start
        self._on_next = on_next
        self._on_complete = on_complete
        self._on_error = on_error
        self._loop = asyncio.get_running_loop()
        self._pump = self._loop.create_task(self._run())
        return self

    def unsubscribe(self) -> None:
        """Stop admitting, abort in-flight probes and suppress further delivery.

        Safe to call from a callback or from a loop signal handler.
        """

        if self._cancelled or self.state in TERMINAL_STATES:
            return
        self._cancelled = True
        self.state = StreamState.CANCELLED
        logger.debug("Stream cancelled with %d probes in flight", len(self._in_flight))
        for task in list(self._in_flight):
            task.cancel()
        if self._admission is not None:
            self._admission.cancel()
        if self._pump is not None and self._pump is not asyncio.current_task():
            self._pump.cancel()

    def unsubscribe_threadsafe(self) -> None:
        """Request :meth:`unsubscribe` from a thread other than the loop's."""

        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.unsubscribe)

    @property
    def closed(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def wait(self) -> StreamState:
        """Wait until the run ends and return its final state."""

        if self._pump is not None:
            await asyncio.wait({self._pump})
        return self.state

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    async def _run(self) -> None:
        try:
            self.state = StreamState.STARTED
            await _invoke(self._on_start, self)
            if self._cancelled:
                return
            self.state = StreamState.EMITTING
            self._admission = asyncio.create_task(self._admit())
            while True:
                item = await self._settled.get()
                if item is _END_OF_EVENTS or self._cancelled:
                    break
                event: ProbeEvent = item  # type: ignore[assignment]
                self.statistics.count(event)
                await _invoke(self._on_next, event)
                if self._cancelled:
                    return
            if self._cancelled:
                return
            # Surfaces a source failure raised during admission.
            await self._admission
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
        except Exception as exc:
            self.state = StreamState.ERRORED
            await self._shutdown_tasks()
            logger.debug("Stream failed: %r", exc)
            await self._deliver_error(exc)
        else:
            if not self._cancelled:
                self.state = StreamState.COMPLETED
                await _invoke(self._on_complete)
        finally:
            self.statistics.finished_at = time.perf_counter()
            await self._shutdown_tasks()

    async def _deliver_error(self, exc: BaseException) -> None:
        try:
            await _invoke(self._on_error, exc)
        except Exception:
            logger.exception("Error callback raised while handling %r", exc)

    async def _admit(self) -> None:
        # Keep the slot table full: admit the next address whenever a slot frees.
        limit = self.configuration.concurrency
        targets = iter_scan_targets(self._tokens, DedupFilter(self.record), self.statistics)
        try:
            async for address in targets:
                while len(self._in_flight) >= limit:
                    await asyncio.wait(self._in_flight, return_when=asyncio.FIRST_COMPLETED)
                if self._cancelled:
                    break
                task = asyncio.create_task(self._dispatch(address))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)
                if len(self._in_flight) > self.statistics.peak_in_flight:
                    self.statistics.peak_in_flight = len(self._in_flight)
            while self._in_flight:
                await asyncio.wait(set(self._in_flight))
        finally:
            await targets.aclose()
            self._settled.put_nowait(_END_OF_EVENTS)

    async def _dispatch(self, address: ipaddress.IPv4Address) -> None:
        try:
            event = await self._probe(address, self.configuration)
        except Exception as exc:
            logger.debug("Probe for %s raised", address, exc_info=True)
            event = ProbeEvent(address, False, ProbeError(describe_os_error(exc)))
        if not self._cancelled:
            self._settled.put_nowait(event)

    async def _shutdown_tasks(self) -> None:
        pending = [task for task in self._in_flight if not task.done()]
        if self._admission is not None and not self._admission.done():
            pending.append(self._admission)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


# -----------------------------------------------------------------------------
# Terminal consumer
# -----------------------------------------------------------------------------

def ensure_parent_directory_exists(file_path: str) -> None:
    """Create the parent directory for *file_path* when it is missing."""

    directory = os.path.dirname(os.path.abspath(file_path))
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)


class ScanReporter:
    """Stream consumer: persists outcomes and renders them on the terminal.

    Writes happen on a single worker thread; ``on_next`` hands back the
    pending write so the stream holds the next event until it lands.
    """

    def __init__(self,
                 record: ScanRecord,
                 output: Optional[TextIO],
                 executor: ThreadPoolExecutor,
                 *,
                 verbose: bool = False,
                 silent: bool = False,
                 colorize: bool = False,
                 terminal: Optional[TextIO] = None) -> None:
        self.record = record
        self.output = output
        self.verbose = verbose
        self.silent = silent
        self.colorize = colorize
        self.terminal = terminal if terminal is not None else sys.stderr
        self.failure: Optional[BaseException] = None
        self.completed = False
        self._executor = executor

    def on_start(self, stream: ProbeStream) -> None:
        if self.silent:
            return
        if stream.interactive:
            self._say("Enter addresses or ranges, one per line. Ctrl-D ends input, Ctrl-C aborts.")

    def on_next(self, event: ProbeEvent) -> "asyncio.Future[None]":
        self._render(event)
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._executor, self._persist, event)

    def on_complete(self) -> None:
        self.completed = True

    def on_error(self, exc: BaseException) -> None:
        self.failure = exc
        self._say(self._paint(f"Error: {exc}", "red"), force=True)

    def _persist(self, event: ProbeEvent) -> None:
        if event.success and self.output is not None:
            self.output.write(f"{event.address}\n")
            self.output.flush()
        self.record.append(event.address, event.success)

    def _render(self, event: ProbeEvent) -> None:
        if self.silent:
            return
        timestamp = utc_now_str()
        if event.success:
            line = f"# {timestamp}\t| {event.address}\t= {OUTCOME_OK} sni={event.domain} [{event.duration_ms}ms]"
            self._say(self._paint(line, "green"))
        elif self.verbose:
            line = f"# {timestamp}\t| {event.address}\t= {OUTCOME_FAILURE} {event.describe_reason()} [{event.duration_ms}ms]"
            self._say(self._paint(line, "red"))

    def _paint(self, text: str, color: str) -> str:
        if not self.colorize:
            return text
        return colored(text, color)

    def _say(self, text: str, force: bool = False) -> None:
        if self.silent and not force:
            return
        print(text, file=self.terminal, flush=True)


# -----------------------------------------------------------------------------
# Packet capture helpers
# -----------------------------------------------------------------------------

def ensure_prerequisites_for_pcap() -> Optional[str]:
    """Return an error message when pcap capture cannot run, else None."""

    if not SCAPY_AVAILABLE:
        return "Scapy required for --pcap. Install with: pip install scapy"
    try:
        euid = os.geteuid()
    except AttributeError:
        logger.warning("Cannot verify root privileges on this OS. Capture may fail.")
        return None
    if euid != 0:
        return "Root privileges required for --pcap. Rerun with sudo."
    return None


def start_pcap_sniffer(port: int) -> Any:

    if not SCAPY_AVAILABLE:
        return None
    try:
        sniffer = scapy.AsyncSniffer(filter=f"tcp port {port}")
        sniffer.start()
        return sniffer
    except Exception as exc:
        logger.warning("Could not start packet capture: %s", type(exc).__name__)
        return None


def stop_sniffer_and_write_pcap(sniffer: Any, pcap_filename: str) -> None:

    if sniffer is None:
        return
    try:
        ensure_parent_directory_exists(pcap_filename)
        captured_packets = sniffer.stop()
        scapy.wrpcap(pcap_filename, captured_packets if captured_packets else [])
    except Exception as exc:
        logger.error("Failed to write pcap %s: %s", pcap_filename, type(exc).__name__)
    else:
        logger.info("pcap -> %s", pcap_filename)


# -----------------------------------------------------------------------------
# Command line
# -----------------------------------------------------------------------------

def build_cli_parser() -> argparse.ArgumentParser:

    parser = argparse.ArgumentParser(
        prog="sniscan",
        description=(
            "Probe IPv4 addresses on the TLS port and list those that complete a handshake "
            "for the given SNI domains. Addresses come from positional arguments, --input, "
            "or stdin."
        ),
    )

    parser.add_argument(
        "addresses",
        nargs="*",
        metavar="ADDRESS",
        help="Address, CIDR block (10.0.0.0/24) or range (10.0.0.1-10.0.0.9, 10.0.0.1-9).",
    )

    parser.add_argument(
        "-i", "--input",
        metavar="FILE",
        help="File with one address or range per line. Default: stdin when no ADDRESS is given.",
    )

    parser.add_argument(
        "-o", "--output",
        metavar="FILE",
        default="-",
        help="Where accepted addresses are written, one per line. Default: stdout.",
    )

    parser.add_argument(
        "-r", "--resume",
        metavar="FILE",
        default=str(DEFAULTS["RESUME"]) or None,
        help=(
            "Append-only resume log; addresses already listed are skipped. "
            "Default: <cwd-name>.sniscan-resume.log in the working directory (SNISCAN_RESUME)."
        ),
    )

    parser.add_argument(
        "-c", "--concurrency",
        type=int,
        default=int(DEFAULTS["CONCURRENCY"]),
        help="Maximum probes in flight. Default: %(default)s (SNISCAN_CONCURRENCY).",
    )

    parser.add_argument(
        "-d", "--domains",
        default=str(DEFAULTS["DOMAINS"]),
        help="Comma separated SNI domains, tried in order. Default: %(default)s (SNISCAN_DOMAINS).",
    )

    parser.add_argument(
        "-t", "--timeout",
        default=str(DEFAULTS["TIMEOUT"]),
        help="Per-address timeout such as 500ms, 5s or 1m. Default: %(default)s (SNISCAN_TIMEOUT).",
    )

    parser.add_argument(
        "-p", "--port",
        type=int,
        default=int(DEFAULTS["PORT"]),
        help="TLS port to probe. Default: %(default)s (SNISCAN_PORT).",
    )

    source_group = parser.add_mutually_exclusive_group()
    source_group.add_argument(
        "--interface",
        metavar="NAME",
        help="Send probes from the IPv4 address of this network interface.",
    )
    source_group.add_argument(
        "--source-ip",
        metavar="ADDRESS",
        help="Send probes from this local IPv4 address.",
    )

    parser.add_argument(
        "--pcap",
        metavar="FILE",
        help="Capture probe traffic to FILE (root + scapy).",
    )

    verbosity_group = parser.add_mutually_exclusive_group()
    verbosity_group.add_argument(
        "-s", "--silent",
        action="store_true",
        help="Print nothing but accepted addresses and fatal errors.",
    )
    verbosity_group.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Also report failures with their full reason.",
    )

    return parser


def configure_logging(verbose: bool, silent: bool) -> None:

    level = logging.WARNING
    if verbose:
        level = logging.DEBUG
    elif silent:
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s", stream=sys.stderr)
    logger.setLevel(level)


def validate_positional_tokens(tokens: Sequence[str]) -> None:
    """Raise InvalidAddressError on the first malformed positional token."""

    for token in tokens:
        parse_range_token(token)


def build_configuration(parsed_arguments: argparse.Namespace) -> Tuple[ProbeConfiguration, Optional[str]]:
    """Turn parsed options into a probe configuration plus an optional notice."""

    domains = parse_domain_list(parsed_arguments.domains)
    if not domains:
        raise InvalidInputError("at least one SNI domain is required (--domains)")

    if not 1 <= parsed_arguments.port <= 65535:
        raise InvalidInputError(f"invalid port {parsed_arguments.port}")

    concurrency, soft_limit = apply_fd_limit_guardrail(parsed_arguments.concurrency)
    notice = None
    if soft_limit is not None:
        notice = (
            f"Concurrency reduced from {parsed_arguments.concurrency} to {concurrency} "
            f"(open file limit {soft_limit})."
        )

    local_address = None
    if parsed_arguments.interface:
        local_address = resolve_interface_ipv4(parsed_arguments.interface)
    elif parsed_arguments.source_ip:
        try:
            local_address = str(ipaddress.IPv4Address(parsed_arguments.source_ip))
        except ValueError as exc:
            raise InvalidInputError(f"invalid --source-ip: {exc}") from exc

    configuration = ProbeConfiguration(
        domains=domains,
        concurrency=concurrency,
        timeout=parse_duration(parsed_arguments.timeout, DEFAULT_TIMEOUT_SECONDS),
        port=parsed_arguments.port,
        local_address=local_address,
    )
    return configuration, notice


def _install_interrupt_handler(stream: ProbeStream) -> Callable[[], None]:
    # Route Ctrl-C to unsubscribe; return a function that restores the old handler.
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stream.unsubscribe)
    except (NotImplementedError, RuntimeError):
        previous = signal.getsignal(signal.SIGINT)

        def handle_interrupt(_signum, _frame) -> None:
            stream.unsubscribe_threadsafe()

        signal.signal(signal.SIGINT, handle_interrupt)
        return lambda: signal.signal(signal.SIGINT, previous)
    return lambda: loop.remove_signal_handler(signal.SIGINT)


def _print_summary(statistics: ScanStatistics, state: StreamState) -> None:

    print(
        f"DONE end={utc_now_str()} state={state.value} "
        f"ok={statistics.succeeded} failed={statistics.failed} "
        f"skipped={statistics.skipped} invalid={statistics.invalid_tokens} "
        f"peak_in_flight={statistics.peak_in_flight} "
        f"elapsed={statistics.elapsed_seconds:.1f}s",
        file=sys.stderr,
    )


async def run_scan(parsed_arguments: argparse.Namespace,
                   configuration: ProbeConfiguration) -> int:
    """Wire sources, resume log and output to a probe stream and run it."""

    resume_path = parsed_arguments.resume or default_resume_path()
    record = ScanRecord.load(resume_path)
    try:
        record.open()
    except OSError as exc:
        print(f"Cannot open resume log {resume_path}: {describe_os_error(exc)}", file=sys.stderr)
        return EXIT_FAILURE

    output: Optional[TextIO] = None
    close_output = False
    try:
        if parsed_arguments.output in (None, "-"):
            output = sys.stdout
        else:
            ensure_parent_directory_exists(parsed_arguments.output)
            output = open(parsed_arguments.output, mode="a", encoding="utf-8")
            close_output = True
    except OSError as exc:
        record.close()
        print(f"Cannot open output {parsed_arguments.output}: {describe_os_error(exc)}", file=sys.stderr)
        return EXIT_FAILURE

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sniscan-writer")
    sniffer = None
    restore_interrupt_handler: Optional[Callable[[], None]] = None
    stdin_transport: Optional[asyncio.BaseTransport] = None
    try:
        input_file: Optional[Union[str, TextIO]] = parsed_arguments.input
        stream_reader: Optional[asyncio.StreamReader] = None
        interactive = False
        if not parsed_arguments.addresses and input_file is None and sys.stdin is not None and not sys.stdin.closed:
            if stdin_is_regular_file(sys.stdin):
                input_file = sys.stdin
            else:
                interactive = sys.stdin.isatty()
                stream_reader, stdin_transport = await connect_stdin_reader()

        try:
            tokens = open_token_source(parsed_arguments.addresses, input_file, stream_reader)
        except InvalidInputError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return EXIT_FAILURE

        reporter = ScanReporter(
            record,
            output,
            executor,
            verbose=parsed_arguments.verbose,
            silent=parsed_arguments.silent,
            colorize=sys.stderr.isatty(),
        )

        if not parsed_arguments.silent:
            print(
                f"SCAN start={utc_now_str()} "
                f"domains={','.join(configuration.domains)} "
                f"port={configuration.port} "
                f"concurrency={configuration.concurrency} "
                f"timeout={configuration.timeout:g}s "
                f"resume={resume_path} ({len(record)} known)",
                file=sys.stderr,
            )

        if parsed_arguments.pcap:
            sniffer = start_pcap_sniffer(configuration.port)

        stream = ProbeStream(tokens, configuration, record=record, interactive=interactive)
        stream.subscribe(
            on_next=reporter.on_next,
            on_start=reporter.on_start,
            on_complete=reporter.on_complete,
            on_error=reporter.on_error,
        )
        restore_interrupt_handler = _install_interrupt_handler(stream)
        state = await stream.wait()

        if not parsed_arguments.silent:
            _print_summary(stream.statistics, state)

        if state is StreamState.CANCELLED:
            return EXIT_INTERRUPTED
        if state is StreamState.ERRORED:
            return EXIT_FAILURE
        return EXIT_OK
    finally:
        if restore_interrupt_handler is not None:
            restore_interrupt_handler()
        if stdin_transport is not None:
            close_stdin_reader(stdin_transport)
        if sniffer is not None:
            stop_sniffer_and_write_pcap(sniffer, parsed_arguments.pcap)
        executor.shutdown(wait=True)
        record.close()
        if close_output and output is not None:
            output.close()


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    """Parse *argv*, validate it and run a scan. Returns the exit status."""

    parsed_arguments = build_cli_parser().parse_args(argv)
    configure_logging(parsed_arguments.verbose, parsed_arguments.silent)

    try:
        validate_positional_tokens(parsed_arguments.addresses)
    except InvalidAddressError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        configuration, notice = build_configuration(parsed_arguments)
    except InvalidInputError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    if notice and not parsed_arguments.silent:
        print(notice, file=sys.stderr)

    if parsed_arguments.pcap:
        problem = ensure_prerequisites_for_pcap()
        if problem:
            print(problem, file=sys.stderr)
            return EXIT_PREREQUISITE

    return asyncio.run(run_scan(parsed_arguments, configuration))


def main() -> None:

    sys.exit(run_cli(sys.argv[1:]))


if __name__ == "__main__":
    main()
