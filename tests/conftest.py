# SPDX-License-Identifier: MIT
# Copyright (c) 2025 tsupplis

import pytest

from ntpquery import Mode, NtpTimestamp, Packet, set_mode, set_version


class FakeTransport:
    """Transport double that records every call and replays canned results"""

    def __init__(self, reply=b"", resolve_error=None, open_error=None,
                 write_error=None, read_error=None):
        self.reply = reply
        self.resolve_error = resolve_error
        self.open_error = open_error
        self.write_error = write_error
        self.read_error = read_error
        self.calls = []
        self.sent = []

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    def resolve(self, host, port):
        self.calls.append(("resolve", host, port))
        if self.resolve_error:
            raise self.resolve_error
        return (host, port)

    def open(self, address):
        self.calls.append(("open", address))
        if self.open_error:
            raise self.open_error
        return "sock"

    def set_deadline(self, sock, deadline):
        self.calls.append(("set_deadline", sock, deadline))

    def write_exact(self, sock, data):
        self.calls.append(("write_exact", sock, data))
        if self.write_error:
            raise self.write_error
        self.sent.append(data)

    def read_exact(self, sock, n):
        self.calls.append(("read_exact", sock, n))
        if self.read_error:
            raise self.read_error
        return self.reply

    def close(self, sock):
        self.calls.append(("close", sock))


def server_reply(receive_ns, transmit_ns, stratum=2, mode=Mode.SERVER):
    """Encoded server reply carrying the given Unix nanosecond instants"""
    packet = Packet(
        li_vn_mode=set_version(set_mode(0, mode), 4),
        stratum=stratum,
        poll=6,
        precision=-20,
        root_delay=0x00010000,
        root_dispersion=0x00008000,
        reference_id=0x47505300,
        receive_time=NtpTimestamp.from_unix_ns(receive_ns),
        transmit_time=NtpTimestamp.from_unix_ns(transmit_ns),
    )
    return packet.encode()


@pytest.fixture
def fake_transport():
    return FakeTransport


@pytest.fixture
def make_reply():
    return server_reply
