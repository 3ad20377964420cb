"""ICMP echo prober owning one raw socket per target."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from . import icmp
from .utils import NANOS_PER_SECOND

logger = logging.getLogger(__name__)


class ProbeError(RuntimeError):
    """Base class for failures captured in a :class:`ProbeResult`."""


class ResolutionError(ProbeError):
    """The target could not be resolved to an address."""


class TransportError(ProbeError):
    """Opening, writing to, reading from or closing a socket failed."""


class ProbeTimeout(ProbeError):
    """No matching echo reply arrived before the deadline."""


@dataclass(frozen=True)
class ProbeResult:
    target: str
    ip: str = ""
    seq: int = 0
    ok: bool = False
    rtt_ns: int = 0
    error: Optional[BaseException] = None


class Prober(Protocol):
    def probe(self, target: str, seq: int) -> ProbeResult:  # pragma: no cover - protocol definition
        ...

    def close(self) -> None:  # pragma: no cover - protocol definition
        ...


@dataclass(frozen=True)
class ResolvedAddress:
    ip: str
    family: int
    sockaddr: Tuple


@dataclass(frozen=True)
class _SocketBinding:
    ip: str
    family: int
    sock: socket.socket


Resolver = Callable[[str], ResolvedAddress]
SocketFactory = Callable[[int], socket.socket]


def resolve_target(target: str) -> ResolvedAddress:
    """Resolve ``target`` to a single address, preferring IPv4."""
    try:
        infos = socket.getaddrinfo(target, None, socket.AF_UNSPEC, socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise ResolutionError(f"cannot resolve {target!r}: {exc}") from exc

    candidates = [
        info for info in infos if info[0] in (socket.AF_INET, socket.AF_INET6)
    ]
    if not candidates:
        raise ResolutionError(f"no IPv4 or IPv6 address for {target!r}")

    candidates.sort(key=lambda info: 0 if info[0] == socket.AF_INET else 1)
    family, _, _, _, sockaddr = candidates[0]
    return ResolvedAddress(ip=sockaddr[0], family=family, sockaddr=sockaddr)


def open_icmp_socket(family: int) -> socket.socket:
    """Open a raw ICMP (or ICMPv6) socket. Usually requires privileges."""
    proto = icmp.protocol_number(family)
    try:
        return socket.socket(family, socket.SOCK_RAW, proto)
    except PermissionError as exc:
        raise TransportError(
            "raw ICMP sockets need root or CAP_NET_RAW "
            f"(family={family}): {exc}"
        ) from exc
    except OSError as exc:
        raise TransportError(f"failed to open ICMP socket (family={family}): {exc}") from exc


def _failure(target: str, seq: int, error: BaseException, ip: str = "") -> ProbeResult:
    return ProbeResult(target=target, ip=ip, seq=seq, ok=False, error=error)


def _same_address(left: str, right: str) -> bool:
    """Compare two textual IPs, ignoring any IPv6 zone suffix."""
    try:
        return ipaddress.ip_address(left.split("%", 1)[0]) == ipaddress.ip_address(
            right.split("%", 1)[0]
        )
    except ValueError:
        return False


class ICMPProber:
    """Send echo requests and wait for the reply carrying our id and sequence.

    Each target gets its own raw socket, created lazily and replaced when the
    target resolves to a different address or family. A probe that is still
    in flight on a socket being replaced may fail with a closed-socket error;
    DNS changes are rare enough that this is accepted.
    """

    def __init__(
        self,
        timeout: float,
        *,
        resolver: Resolver = resolve_target,
        socket_factory: SocketFactory = open_icmp_socket,
        identifier: Optional[int] = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout
        self.identifier = (
            icmp.process_identifier() if identifier is None else identifier & 0xFFFF
        )
        self._resolver = resolver
        self._socket_factory = socket_factory
        self._lock = threading.Lock()
        self._bindings: Dict[str, _SocketBinding] = {}

    # ------------------------------------------------------------------
    def probe(self, target: str, seq: int) -> ProbeResult:
        try:
            resolved = self._resolver(target)
        except ProbeError as exc:
            return _failure(target, seq, exc)

        try:
            binding = self._binding_for(target, resolved)
            packet = icmp.build_echo_request(resolved.family, self.identifier, seq)
        except (ProbeError, icmp.EchoCodecError) as exc:
            return _failure(target, seq, exc, resolved.ip)

        start = time.perf_counter_ns()
        deadline = start + int(self.timeout * NANOS_PER_SECOND)
        try:
            self._send(binding, packet, resolved)
            self._await_reply(binding, seq, deadline)
        except ProbeError as exc:
            return _failure(target, seq, exc, resolved.ip)

        return ProbeResult(
            target=target,
            ip=resolved.ip,
            seq=seq,
            ok=True,
            rtt_ns=time.perf_counter_ns() - start,
        )

    def _send(self, binding: _SocketBinding, packet: bytes, resolved: ResolvedAddress) -> None:
        try:
            binding.sock.sendto(packet, resolved.sockaddr)
        except OSError as exc:
            raise TransportError(f"send to {resolved.ip} failed: {exc}") from exc

    def _await_reply(self, binding: _SocketBinding, seq: int, deadline: int) -> None:
        while True:
            remaining = deadline - time.perf_counter_ns()
            if remaining <= 0:
                raise ProbeTimeout(f"no reply from {binding.ip} within {self.timeout:g}s")

            try:
                binding.sock.settimeout(remaining / NANOS_PER_SECOND)
                packet, source = binding.sock.recvfrom(icmp.RECV_BUFFER_SIZE)
            except socket.timeout as exc:
                raise ProbeTimeout(
                    f"no reply from {binding.ip} within {self.timeout:g}s"
                ) from exc
            except OSError as exc:
                raise TransportError(f"receive from {binding.ip} failed: {exc}") from exc

            # Raw sockets see every ICMP message for the family, including
            # replies other targets' sockets are waiting for.
            if not _same_address(source[0], binding.ip):
                logger.debug(
                    "Discarding ICMP packet from %s while waiting on %s", source[0], binding.ip
                )
                continue
            if icmp.is_matching_reply(binding.family, packet, self.identifier, seq):
                return
            logger.debug("Discarding unrelated ICMP packet while waiting for seq=%d", seq)

    # ------------------------------------------------------------------
    def _binding_for(self, target: str, resolved: ResolvedAddress) -> _SocketBinding:
        with self._lock:
            current = self._bindings.get(target)
            if (
                current is not None
                and current.ip == resolved.ip
                and current.family == resolved.family
            ):
                return current

            if current is not None:
                logger.info(
                    "Address for %s changed from %s to %s; reopening socket",
                    target,
                    current.ip,
                    resolved.ip,
                )
                del self._bindings[target]
                try:
                    current.sock.close()
                except OSError:
                    logger.debug("Failed to close replaced socket for %s", target, exc_info=True)

            binding = _SocketBinding(
                ip=resolved.ip,
                family=resolved.family,
                sock=self._socket_factory(resolved.family),
            )
            self._bindings[target] = binding
            return binding

    # ------------------------------------------------------------------
    def close(self) -> None:
        """Close every socket, raising the first failure after trying them all."""
        with self._lock:
            bindings = list(self._bindings.items())
            self._bindings = {}

        first_error: Optional[OSError] = None
        for target, binding in bindings:
            try:
                binding.sock.close()
            except OSError as exc:
                logger.debug("Failed to close socket for %s", target, exc_info=True)
                if first_error is None:
                    first_error = exc

        if first_error is not None:
            raise TransportError(f"failed to close ICMP socket: {first_error}") from first_error

    def __enter__(self) -> "ICMPProber":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()


__all__ = [
    "ProbeError",
    "ResolutionError",
    "TransportError",
    "ProbeTimeout",
    "ProbeResult",
    "Prober",
    "ResolvedAddress",
    "ICMPProber",
    "resolve_target",
    "open_icmp_socket",
]
