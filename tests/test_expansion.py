import ipaddress

import pytest

import sniscan


def as_text(addresses):
    return [str(address) for address in addresses]


def test_single_address_expands_to_itself():
    assert as_text(sniscan.expand_range_token("93.184.216.34")) == ["93.184.216.34"]


def test_cidr_block_covers_network_and_broadcast():
    assert as_text(sniscan.expand_range_token("10.0.0.0/30")) == [
        "10.0.0.0",
        "10.0.0.1",
        "10.0.0.2",
        "10.0.0.3",
    ]


def test_cidr_host_bits_are_ignored():
    assert as_text(sniscan.expand_range_token("10.0.0.7/31")) == ["10.0.0.6", "10.0.0.7"]


def test_explicit_range_crosses_octet_boundary():
    assert as_text(sniscan.expand_range_token("10.0.0.254-10.0.1.1")) == [
        "10.0.0.254",
        "10.0.0.255",
        "10.0.1.0",
        "10.0.1.1",
    ]


def test_short_range_uses_last_octet():
    assert as_text(sniscan.expand_range_token(" 192.168.1.250-252 ")) == [
        "192.168.1.250",
        "192.168.1.251",
        "192.168.1.252",
    ]


@pytest.mark.parametrize(
    "token",
    [
        "",
        "999.1.1.1",
        "10.0.0",
        "10.0.0.1/33",
        "10.0.0.9-10.0.0.1",
        "10.0.0.9-3",
        "10.0.0.1-300",
        "example.org",
        "010.0.0.1",
        "::1",
    ],
)
def test_malformed_tokens_are_rejected(token):
    with pytest.raises(sniscan.InvalidAddressError):
        sniscan.expand_range_token(token)


def test_invalid_address_error_is_a_value_error():
    with pytest.raises(ValueError):
        sniscan.parse_range_token("1.2.3")


def test_expansion_is_lazy_for_the_whole_address_space():
    addresses = sniscan.expand_range_token("0.0.0.0/0")
    assert next(addresses) == ipaddress.IPv4Address("0.0.0.0")
    assert next(addresses) == ipaddress.IPv4Address("0.0.0.1")
    assert sniscan.range_size("0.0.0.0/0") == 2 ** 32


def test_expansion_is_ascending_unique_and_deterministic():
    first = list(sniscan.expand_range_token("172.16.3.0/23"))
    second = list(sniscan.expand_range_token("172.16.3.0/23"))
    assert first == second
    assert first == sorted(set(first))
    assert len(first) == sniscan.range_size("172.16.3.0/23") == 512


def test_range_ending_at_last_address_terminates():
    assert as_text(sniscan.expand_range_token("255.255.255.254-255.255.255.255")) == [
        "255.255.255.254",
        "255.255.255.255",
    ]


@pytest.mark.parametrize(
    "line,expected",
    [
        ("  10.0.0.1  \n", "10.0.0.1"),
        (b"10.0.0.0/24\r\n", "10.0.0.0/24"),
        ("\n", None),
        ("   ", None),
        ("# comment", None),
    ],
)
def test_clean_token(line, expected):
    assert sniscan.clean_token(line) == expected
