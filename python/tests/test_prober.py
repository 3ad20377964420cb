from __future__ import annotations

import os
import socket
from collections import deque
from typing import Callable, Deque, List, Tuple, Union

import dpkt
import pytest

from rttlog import icmp
from rttlog.prober import (
    ICMPProber,
    ProbeTimeout,
    ResolutionError,
    ResolvedAddress,
    TransportError,
    resolve_target,
)

IDENT = 0x4242

Reply = Union[bytes, Callable[[bytes], bytes], Tuple[bytes, str]]


class FakeSocket:
    """Socket double that answers recvfrom() from a scripted queue."""

    def __init__(self, family: int, replies: List[Reply], *, close_error: bool = False) -> None:
        self.family = family
        self.replies: Deque[Reply] = deque(replies)
        self.sent: List[tuple] = []
        self.timeouts: List[float] = []
        self.closed = False
        self.close_error = close_error

    def sendto(self, data: bytes, address) -> int:
        if self.closed:
            raise OSError("socket closed")
        self.sent.append((data, address))
        return len(data)

    def settimeout(self, value: float) -> None:
        self.timeouts.append(value)

    def recvfrom(self, size: int):
        if not self.replies:
            raise socket.timeout("timed out")
        reply = self.replies.popleft()
        # Replies come from the host we last sent to unless the script
        # names another source as ``(packet, source_ip)``.
        source = self.sent[-1][1][0]
        if isinstance(reply, tuple):
            reply, source = reply
        if callable(reply):
            reply = reply(self.sent[-1][0])
        return reply, (source, 0)

    def close(self) -> None:
        self.closed = True
        if self.close_error:
            raise OSError("close failed")


class SocketFactory:
    def __init__(self, script: Callable[[int], FakeSocket]) -> None:
        self.script = script
        self.created: List[FakeSocket] = []

    def __call__(self, family: int) -> FakeSocket:
        sock = self.script(family)
        self.created.append(sock)
        return sock


def _resolver(mapping):
    def resolve(target: str) -> ResolvedAddress:
        value = mapping[target]
        if isinstance(value, Exception):
            raise value
        family = socket.AF_INET6 if ":" in value else socket.AF_INET
        sockaddr = (value, 0, 0, 0) if family == socket.AF_INET6 else (value, 0)
        return ResolvedAddress(ip=value, family=family, sockaddr=sockaddr)

    return resolve


def _wrap_v4(message: bytes) -> bytes:
    return bytes(
        dpkt.ip.IP(
            src=socket.inet_aton("192.0.2.1"),
            dst=socket.inet_aton("192.0.2.99"),
            p=dpkt.ip.IP_PROTO_ICMP,
            len=20 + len(message),
            data=message,
        )
    )


def _reply_v4(identifier: int, sequence: int) -> bytes:
    echo = dpkt.icmp.ICMP.Echo(id=identifier, seq=sequence, data=icmp.ECHO_PAYLOAD)
    return _wrap_v4(bytes(dpkt.icmp.ICMP(type=dpkt.icmp.ICMP_ECHOREPLY, data=echo)))


def _echo_back_v4(request: bytes) -> bytes:
    message = dpkt.icmp.ICMP(request)
    return _reply_v4(message.data.id, message.data.seq)


def _echo_back_v6(request: bytes) -> bytes:
    message = dpkt.icmp6.ICMP6(request)
    reply = dpkt.icmp6.ICMP6(
        type=dpkt.icmp6.ICMP6_ECHO_REPLY,
        data=dpkt.icmp6.ICMP6.Echo(id=message.data.id, seq=message.data.seq),
    )
    return bytes(reply)


def _prober(factory, mapping, timeout: float = 0.5) -> ICMPProber:
    return ICMPProber(
        timeout,
        resolver=_resolver(mapping),
        socket_factory=factory,
        identifier=IDENT,
    )


def test_probe_succeeds_on_matching_reply():
    factory = SocketFactory(lambda family: FakeSocket(family, [_echo_back_v4]))
    prober = _prober(factory, {"one": "192.0.2.1"})

    result = prober.probe("one", 1)

    assert result.ok
    assert result.error is None
    assert result.target == "one"
    assert result.ip == "192.0.2.1"
    assert result.seq == 1
    assert result.rtt_ns > 0

    sock = factory.created[0]
    data, address = sock.sent[0]
    assert address == ("192.0.2.1", 0)
    request = dpkt.icmp.ICMP(data)
    assert (request.data.id, request.data.seq) == (IDENT, 1)
    assert 0 < sock.timeouts[0] <= 0.5


def test_probe_discards_unrelated_traffic_before_match():
    unreach = _wrap_v4(
        bytes(dpkt.icmp.ICMP(type=dpkt.icmp.ICMP_UNREACH, data=dpkt.icmp.ICMP.Unreach()))
    )
    replies = [
        b"\x00garbage",
        unreach,
        _reply_v4(IDENT + 1, 3),  # another process
        _reply_v4(IDENT, 2),  # stale sequence
        _echo_back_v4,
    ]
    factory = SocketFactory(lambda family: FakeSocket(family, replies))
    prober = _prober(factory, {"one": "192.0.2.1"})

    result = prober.probe("one", 3)

    assert result.ok
    assert not factory.created[0].replies


def test_probe_times_out_when_nothing_matches():
    factory = SocketFactory(lambda family: FakeSocket(family, [_reply_v4(IDENT, 9)]))
    prober = _prober(factory, {"one": "192.0.2.1"}, timeout=0.05)

    result = prober.probe("one", 1)

    assert not result.ok
    assert isinstance(result.error, ProbeTimeout)
    assert result.ip == "192.0.2.1"


def test_reply_from_another_host_is_not_attributed_to_target():
    # Same identifier and sequence, but sent by a different (faster) target.
    factory = SocketFactory(
        lambda family: FakeSocket(family, [(_reply_v4(IDENT, 1), "192.0.2.1")])
    )
    prober = _prober(factory, {"slow": "198.51.100.9"}, timeout=0.05)

    result = prober.probe("slow", 1)

    assert not result.ok
    assert isinstance(result.error, ProbeTimeout)
    assert result.ip == "198.51.100.9"


def test_reply_from_another_host_is_skipped_before_own_reply():
    factory = SocketFactory(
        lambda family: FakeSocket(
            family, [(_reply_v4(IDENT, 1), "192.0.2.1"), (_echo_back_v4, "198.51.100.9")]
        )
    )
    prober = _prober(factory, {"slow": "198.51.100.9"})

    result = prober.probe("slow", 1)

    assert result.ok
    assert not factory.created[0].replies


def test_probe_v6_uses_icmpv6():
    factory = SocketFactory(lambda family: FakeSocket(family, [_echo_back_v6]))
    prober = _prober(factory, {"six": "2001:db8::1"})

    result = prober.probe("six", 5)

    assert result.ok
    sock = factory.created[0]
    assert sock.family == socket.AF_INET6
    request = dpkt.icmp6.ICMP6(sock.sent[0][0])
    assert request.type == dpkt.icmp6.ICMP6_ECHO_REQUEST


def test_resolution_failure_is_reported_without_socket():
    factory = SocketFactory(lambda family: FakeSocket(family, []))
    prober = _prober(factory, {"bad": ResolutionError("no such host")})

    result = prober.probe("bad", 1)

    assert not result.ok
    assert isinstance(result.error, ResolutionError)
    assert result.ip == ""
    assert factory.created == []


def test_socket_open_failure_is_reported():
    def refuse(family: int) -> FakeSocket:
        raise TransportError("permission denied")

    prober = _prober(refuse, {"one": "192.0.2.1"})

    result = prober.probe("one", 1)

    assert isinstance(result.error, TransportError)


def test_send_failure_is_reported():
    def closed_socket(family: int) -> FakeSocket:
        sock = FakeSocket(family, [])
        sock.closed = True
        return sock

    prober = _prober(SocketFactory(closed_socket), {"one": "192.0.2.1"})

    result = prober.probe("one", 1)

    assert isinstance(result.error, TransportError)
    assert "send" in str(result.error)
    assert isinstance(result.error.__cause__, OSError)


def test_socket_reused_while_address_is_stable():
    factory = SocketFactory(lambda family: FakeSocket(family, [_echo_back_v4] * 3))
    prober = _prober(factory, {"one": "192.0.2.1"})

    for seq in (1, 2, 3):
        assert prober.probe("one", seq).ok

    assert len(factory.created) == 1


def test_socket_replaced_when_address_changes():
    mapping = {"one": "192.0.2.1"}
    factory = SocketFactory(
        lambda family: FakeSocket(
            family, [_echo_back_v4 if family == socket.AF_INET else _echo_back_v6]
        )
    )
    prober = _prober(factory, mapping)

    assert prober.probe("one", 1).ok
    mapping["one"] = "2001:db8::5"
    result = prober.probe("one", 2)

    assert result.ip == "2001:db8::5"
    assert len(factory.created) == 2
    old, new = factory.created
    assert old.closed
    assert not new.closed
    assert new.family == socket.AF_INET6


def test_targets_get_independent_sockets():
    factory = SocketFactory(lambda family: FakeSocket(family, [_echo_back_v4]))
    prober = _prober(factory, {"a": "192.0.2.1", "b": "192.0.2.2"})

    assert prober.probe("a", 1).ok
    assert prober.probe("b", 1).ok
    assert len(factory.created) == 2


def test_close_attempts_every_socket_and_raises_first_error():
    sockets = iter(
        [
            FakeSocket(socket.AF_INET, [_echo_back_v4], close_error=True),
            FakeSocket(socket.AF_INET, [_echo_back_v4]),
        ]
    )
    factory = SocketFactory(lambda family: next(sockets))
    prober = _prober(factory, {"a": "192.0.2.1", "b": "192.0.2.2"})
    prober.probe("a", 1)
    prober.probe("b", 1)

    with pytest.raises(TransportError):
        prober.close()

    assert all(sock.closed for sock in factory.created)
    # State is cleared, so a second close has nothing left to do.
    prober.close()


def test_identifier_defaults_to_process_identifier():
    prober = ICMPProber(1.0, resolver=_resolver({}), socket_factory=SocketFactory(lambda f: None))
    assert prober.identifier == os.getpid() & 0xFFFF


def test_rejects_non_positive_timeout():
    with pytest.raises(ValueError):
        ICMPProber(0)


def test_resolve_target_literal_addresses():
    v4 = resolve_target("127.0.0.1")
    assert (v4.ip, v4.family) == ("127.0.0.1", socket.AF_INET)

    v6 = resolve_target("::1")
    assert (v6.ip, v6.family) == ("::1", socket.AF_INET6)


def test_resolve_target_failure():
    with pytest.raises(ResolutionError):
        resolve_target("name.invalid")


@pytest.mark.skipif(
    not os.environ.get("RTTLOG_INTEGRATION"),
    reason="set RTTLOG_INTEGRATION=1 to run integration tests",
)
def test_icmp_probe_integration():
    with ICMPProber(1.0) as prober:
        result = prober.probe("1.1.1.1", 1)

    if isinstance(result.error, TransportError) and "CAP_NET_RAW" in str(result.error):
        pytest.skip("ICMP raw sockets require privileges")
    assert result.error is None
    assert result.ok
    assert result.rtt_ns > 0
