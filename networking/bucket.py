"""
Bucket classifier for client addresses.

IPv4 clients are bucketed by their exact address; IPv6 clients by their /64,
since a single IPv6 host usually controls the whole /64.
"""

from __future__ import annotations

import ipaddress
from typing import Optional, Union

from .models import IPAddress

UNKNOWN_BUCKET = "unknown$"
IPV6_BUCKET_PREFIX = 64


def bucket_for_ip(ip: Optional[Union[str, IPAddress]]) -> str:
    if ip is None:
        return UNKNOWN_BUCKET
    if isinstance(ip, str):
        try:
            ip = ipaddress.ip_address(ip)
        except ValueError:
            return UNKNOWN_BUCKET

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if ip.version == 4:
        return f"ipv4${ip}"

    subnet = ipaddress.IPv6Network((ip, IPV6_BUCKET_PREFIX), strict=False)
    return f"ipv6${subnet.network_address}"


__all__ = ["IPV6_BUCKET_PREFIX", "UNKNOWN_BUCKET", "bucket_for_ip"]
