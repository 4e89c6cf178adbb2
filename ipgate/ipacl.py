"""CIDR-based ACL checks.

Trusted ranges are parsed once into a :class:`RangeSet` and wrapped by a
:class:`Checker`. Both are immutable after construction so a single checker
can be shared by every request handler without locking; reconfiguration
builds a new checker and swaps the reference.
"""
from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Sequence, Tuple, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_WIDTHS = {4: 32, 6: 128}


class IPAclError(ValueError):
    """Base class for all checker errors."""


class ConstructionError(IPAclError):
    """The trusted range list could not be turned into a checker."""


class NoTrustedRangesError(ConstructionError):
    def __init__(self) -> None:
        super().__init__("no trusted IPs provided")


class InvalidRangeSpecError(ConstructionError):
    def __init__(self, spec: object):
        self.spec = spec
        # No network could be formed, hence the <nil>.
        super().__init__(f"parsing CIDR trusted IPs <nil>: invalid CIDR address: {spec}")


class AuthorizationError(IPAclError):
    """A candidate address was rejected."""

    def __init__(self, address: str, message: str):
        self.address = address
        super().__init__(message)


class InvalidAddressError(AuthorizationError):
    def __init__(self, address: str):
        if address == "":
            message = "empty IP address"
        else:
            message = f"unable to parse address: {address}"
        super().__init__(address, message)


class NotAuthorizedError(AuthorizationError):
    def __init__(self, address: str):
        super().__init__(address, f'"{address}" matched none of the trusted IPs')


def _has_leading_zero_octet(text: str) -> bool:
    # Dotted quads may trail an IPv6 literal (::ffff:1.2.3.4).
    tail = text.rsplit(":", 1)[-1]
    if "." not in tail:
        return False
    return any(len(octet) > 1 and octet.startswith("0") for octet in tail.split("."))


def _parse_literal(text: object) -> IPAddress:
    if not isinstance(text, str):
        raise ValueError(f"expected str, got {type(text).__name__}")
    if "%" in text:
        raise ValueError("zoned IPv6 addresses are not accepted")
    if _has_leading_zero_octet(text):
        raise ValueError("leading zeros in IPv4 octet")
    return ipaddress.ip_address(text)


def _parse_prefixlen(text: str, width: int) -> int:
    if not text or not text.isascii() or not text.isdigit():
        raise ValueError(f"invalid prefix length {text!r}")
    if len(text) > 1 and text.startswith("0"):
        raise ValueError(f"invalid prefix length {text!r}")
    prefixlen = int(text)
    if prefixlen > width:
        raise ValueError(f"prefix length {prefixlen} exceeds {width}")
    return prefixlen


def _mask_for(width: int, prefixlen: int) -> int:
    return ((1 << width) - 1) ^ ((1 << (width - prefixlen)) - 1)


def parse_address(text: str) -> IPAddress:
    """Parse a bare IPv4 or IPv6 literal, raising :class:`InvalidAddressError`."""
    try:
        return _parse_literal(text)
    except ValueError as exc:
        raise InvalidAddressError(text) from exc


@dataclass(frozen=True, slots=True)
class NetworkRange:
    """A trusted network with its host bits already cleared."""

    version: int
    base: int
    mask: int
    prefixlen: int

    @classmethod
    def parse(cls, spec: str) -> NetworkRange:
        """Parse a bare address or ``addr/prefixlen`` into a range."""
        try:
            if isinstance(spec, str) and "/" in spec:
                addr_text, prefix_text = spec.split("/", 1)
                addr = _parse_literal(addr_text)
                width = _WIDTHS[addr.version]
                prefixlen = _parse_prefixlen(prefix_text, width)
            else:
                addr = _parse_literal(spec)
                width = _WIDTHS[addr.version]
                prefixlen = width
        except ValueError as exc:
            raise InvalidRangeSpecError(spec) from exc

        mask = _mask_for(width, prefixlen)
        return cls(version=addr.version, base=int(addr) & mask, mask=mask, prefixlen=prefixlen)

    @property
    def network(self) -> IPNetwork:
        if self.version == 4:
            return ipaddress.IPv4Network((self.base, self.prefixlen))
        return ipaddress.IPv6Network((self.base, self.prefixlen))

    def contains(self, ip: IPAddress) -> bool:
        return ip.version == self.version and (int(ip) & self.mask) == self.base

    def __str__(self) -> str:
        return str(self.network)


class RangeSet:
    """Ordered, non-empty, immutable collection of :class:`NetworkRange`."""

    __slots__ = ("_ranges",)

    def __init__(self, ranges: Iterable[NetworkRange]):
        items = tuple(ranges)
        if not items:
            raise NoTrustedRangesError()
        object.__setattr__(self, "_ranges", items)

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    @classmethod
    def build(cls, specs: Optional[Sequence[str]]) -> RangeSet:
        """Parse every spec in order, failing on the first invalid one."""
        if isinstance(specs, str):
            raise TypeError("specs must be a sequence of strings, not a single string")
        if not specs:
            raise NoTrustedRangesError()
        return cls(NetworkRange.parse(spec) for spec in specs)

    def match(self, ip: IPAddress) -> Optional[NetworkRange]:
        for network_range in self._ranges:
            if network_range.contains(ip):
                return network_range
        return None

    def __iter__(self) -> Iterator[NetworkRange]:
        return iter(self._ranges)

    def __len__(self) -> int:
        return len(self._ranges)

    def __repr__(self) -> str:
        return f"RangeSet([{', '.join(repr(str(item)) for item in self._ranges)}])"

    @property
    def ranges(self) -> Tuple[NetworkRange, ...]:
        return self._ranges


class Checker:
    """Answers whether a client address belongs to the trusted ranges."""

    __slots__ = ("_ranges",)

    def __init__(self, ranges: RangeSet):
        object.__setattr__(self, "_ranges", ranges)

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    @classmethod
    def from_specs(cls, specs: Optional[Sequence[str]]) -> Checker:
        return cls(RangeSet.build(specs))

    @property
    def ranges(self) -> RangeSet:
        return self._ranges

    def contains_ip(self, ip: IPAddress) -> bool:
        return self._ranges.match(ip) is not None

    def contains(self, address: str) -> bool:
        """Return True if ``address`` lies in any trusted range.

        Raises :class:`InvalidAddressError` when ``address`` is not an IPv4 or
        IPv6 literal. A False result is a valid negative answer, not an error.
        """
        return self.contains_ip(parse_address(address))

    def authorize(self, address: str) -> None:
        """Return silently if ``address`` is trusted.

        Raises :class:`NotAuthorizedError` for a well-formed address outside all
        ranges and lets :class:`InvalidAddressError` propagate.
        """
        if not self.contains(address):
            raise NotAuthorizedError(address)


def new_checker(specs: Optional[Sequence[str]]) -> Checker:
    return Checker.from_specs(specs)


__all__ = [
    "AuthorizationError",
    "Checker",
    "ConstructionError",
    "IPAclError",
    "IPAddress",
    "InvalidAddressError",
    "InvalidRangeSpecError",
    "NetworkRange",
    "NoTrustedRangesError",
    "NotAuthorizedError",
    "RangeSet",
    "new_checker",
    "parse_address",
]
