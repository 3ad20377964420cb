"""ICMP / ICMPv6 echo encoding and reply matching built on dpkt."""

from __future__ import annotations

import logging
import os
import socket
from typing import Optional, Tuple

import dpkt

logger = logging.getLogger(__name__)

ECHO_PAYLOAD = b"rttlog"
RECV_BUFFER_SIZE = 1500

_WIRE_SEQ_MASK = 0xFFFF


class EchoCodecError(RuntimeError):
    """Raised when an echo request cannot be marshalled."""


def process_identifier() -> int:
    """Echo identifier for this process: the PID truncated to 16 bits."""
    return os.getpid() & 0xFFFF


def protocol_number(family: int) -> int:
    if family == socket.AF_INET:
        return dpkt.ip.IP_PROTO_ICMP
    if family == socket.AF_INET6:
        return dpkt.ip.IP_PROTO_ICMP6
    raise ValueError(f"unsupported address family: {family}")


def wire_sequence(sequence: int) -> int:
    return sequence & _WIRE_SEQ_MASK


def build_echo_request(
    family: int,
    identifier: int,
    sequence: int,
    payload: bytes = ECHO_PAYLOAD,
) -> bytes:
    """Marshal an Echo Request for ``family``.

    ICMPv4 messages carry their own checksum. The ICMPv6 checksum covers a
    pseudo-header only the kernel knows, so it is left at zero and filled in
    on send.
    """
    try:
        if family == socket.AF_INET:
            echo = dpkt.icmp.ICMP.Echo(
                id=identifier, seq=wire_sequence(sequence), data=payload
            )
            message = dpkt.icmp.ICMP(type=dpkt.icmp.ICMP_ECHO, code=0, data=echo)
        elif family == socket.AF_INET6:
            echo = dpkt.icmp6.ICMP6.Echo(
                id=identifier, seq=wire_sequence(sequence), data=payload
            )
            message = dpkt.icmp6.ICMP6(
                type=dpkt.icmp6.ICMP6_ECHO_REQUEST, code=0, data=echo
            )
        else:
            raise EchoCodecError(f"unsupported address family: {family}")
        return bytes(message)
    except (dpkt.PackError, ValueError, TypeError) as exc:
        raise EchoCodecError(
            f"failed to marshal echo request id={identifier} seq={sequence}"
        ) from exc


def parse_echo_reply(family: int, packet: bytes) -> Optional[Tuple[int, int]]:
    """Return ``(identifier, sequence)`` if ``packet`` is an Echo Reply.

    IPv4 raw sockets deliver the IP header in front of the ICMP message while
    IPv6 raw sockets deliver the bare ICMPv6 message.
    """
    try:
        if family == socket.AF_INET:
            return _parse_echo_reply_v4(packet)
        if family == socket.AF_INET6:
            return _parse_echo_reply_v6(packet)
    except (dpkt.UnpackError, ValueError):
        logger.debug("Discarding undecodable ICMP packet", exc_info=True)
        return None
    raise ValueError(f"unsupported address family: {family}")


def _parse_echo_reply_v4(packet: bytes) -> Optional[Tuple[int, int]]:
    ip = dpkt.ip.IP(packet)
    if ip.p != dpkt.ip.IP_PROTO_ICMP:
        return None

    message = ip.data
    if not isinstance(message, dpkt.icmp.ICMP):
        return None
    if message.type != dpkt.icmp.ICMP_ECHOREPLY:
        return None

    echo = message.data
    if not isinstance(echo, dpkt.icmp.ICMP.Echo):
        return None
    return echo.id, echo.seq


def _parse_echo_reply_v6(packet: bytes) -> Optional[Tuple[int, int]]:
    message = dpkt.icmp6.ICMP6(packet)
    if message.type != dpkt.icmp6.ICMP6_ECHO_REPLY:
        return None

    echo = message.data
    if not isinstance(echo, dpkt.icmp6.ICMP6.Echo):
        return None
    return echo.id, echo.seq


def is_matching_reply(family: int, packet: bytes, identifier: int, sequence: int) -> bool:
    parsed = parse_echo_reply(family, packet)
    if parsed is None:
        return False
    return parsed == (identifier, wire_sequence(sequence))


__all__ = [
    "ECHO_PAYLOAD",
    "RECV_BUFFER_SIZE",
    "EchoCodecError",
    "process_identifier",
    "protocol_number",
    "wire_sequence",
    "build_echo_request",
    "parse_echo_reply",
    "is_matching_reply",
]
