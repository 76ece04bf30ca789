# SPDX-License-Identifier: MIT
# Copyright (c) 2025 tsupplis

"""
Tests for offset and delay estimation
"""

from ntpquery import estimate


def test_symmetric_exchange_has_no_offset():
    """Server stamps land halfway through a 20 unit round trip"""
    result = estimate(0, 10, 10, 20)
    assert result.delay == 20
    assert result.network_delay == 10
    assert result.offset == 0


def test_offset_sign_convention():
    """Local clock 10 units behind the server"""
    result = estimate(0, 10, 10, 0)
    assert result.delay == 0
    assert result.network_delay == 0
    assert result.offset == 10


def test_server_processing_time_is_excluded():
    result = estimate(0, 105, 115, 30)
    assert result.delay == 20
    assert result.network_delay == 10
    assert result.offset == 95


def test_local_clock_ahead_gives_negative_offset():
    result = estimate(1000, 500, 500, 1010)
    assert result.delay == 10
    assert result.offset == -505


def test_odd_delay_truncates_toward_zero():
    assert estimate(0, 0, 0, 7).network_delay == 3
    assert estimate(0, 0, 0, -7).network_delay == -3


def test_float_inputs():
    result = estimate(0.0, 10.0, 10.0, 1.0)
    assert result.network_delay == 0.5
    assert result.offset == 9.5


def test_matches_symmetric_formula_on_even_delay():
    t1, t2, t3, t4 = 1_000, 5_020, 5_030, 1_050
    result = estimate(t1, t2, t3, t4)
    assert result.offset == ((t2 - t1) + (t3 - t4)) // 2
