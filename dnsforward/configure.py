"""Filling a proxy configuration from command-line options."""

from __future__ import annotations

import ipaddress
import logging
import ssl
import warnings

from dnsforward.config import Config, IPAddress, IPNetwork
from dnsforward.options import Options

logger = logging.getLogger(__name__)

DEFAULT_LISTEN_ADDR = "0.0.0.0"
DEFAULT_LISTEN_PORT = 53

DEFAULT_DNS64_PREFIX = "64:ff9b::/96"
"""The "Well-Known Prefix" used for DNS64 when none is given."""

NAT64_PREFIX_LENGTH = 12
"""Length, in bytes, of a NAT64 prefix."""

_MIN_VERSIONS = {
    1.1: ssl.TLSVersion.TLSv1_1,
    1.2: ssl.TLSVersion.TLSv1_2,
    1.3: ssl.TLSVersion.TLSv1_3,
}
_MAX_VERSIONS = {
    1.0: ssl.TLSVersion.TLSv1,
    1.1: ssl.TLSVersion.TLSv1_1,
    1.2: ssl.TLSVersion.TLSv1_2,
}


class ConfigureError(Exception):
    """Raised when options cannot be turned into a usable configuration."""


def _parse_ip(text: str) -> IPAddress:
    if "%" in text:
        raise ValueError(f"unexpected zone in {text!r}")
    return ipaddress.ip_address(text)


def _append(config: Config, attr: str, addr: tuple[IPAddress, int]) -> None:
    addrs = getattr(config, attr)
    if addrs is None:
        addrs = []
        setattr(config, attr, addrs)
    addrs.append(addr)


def init_listen_addrs(config: Config, options: Options) -> None:
    """Set the listen addresses of config from the addresses and ports in options.

    Missing addresses and ports default to 0.0.0.0 and 53 and are stored
    back into options.  A first plain port of 0 disables UDP and TCP.
    """
    if not options.listen_addrs:
        options.listen_addrs = [DEFAULT_LISTEN_ADDR]
    if not options.listen_ports:
        options.listen_ports = [DEFAULT_LISTEN_PORT]

    listen_ips = []
    for addr in options.listen_addrs:
        try:
            listen_ips.append(_parse_ip(addr))
        except ValueError as err:
            raise ConfigureError(f"cannot parse {addr}") from err

    def add_all(ports, *attrs: str) -> None:
        for port in ports:
            for ip in listen_ips:
                for attr in attrs:
                    _append(config, attr, (ip, port))

    if options.listen_ports and options.listen_ports[0] != 0:
        add_all(options.listen_ports, "udp_listen_addr", "tcp_listen_addr")

    if config.tls_config is not None:
        add_all(options.tls_listen_ports, "tls_listen_addr")
        add_all(options.https_listen_ports, "https_listen_addr")
        add_all(options.quic_listen_ports, "quic_listen_addr")

    if config.dnscrypt_resolver_cert is not None and config.dnscrypt_provider_name:
        add_all(
            options.dnscrypt_listen_ports,
            "dnscrypt_tcp_listen_addr",
            "dnscrypt_udp_listen_addr",
        )


def init_edns(config: Config, options: Options) -> None:
    """Set the ECS address of config if one is given and ECS is enabled."""
    if not options.edns_addr:
        return
    if not options.enable_edns_subnet:
        logger.warning("--edns-addr=%s need --edns to work", options.edns_addr)
        return
    try:
        config.edns_addr = _parse_ip(options.edns_addr)
    except ValueError as err:
        raise ConfigureError(f"cannot parse {options.edns_addr}") from err


def init_bogus_nxdomain(config: Config, options: Options) -> None:
    """Add the subnets from options to config; invalid ones are logged and skipped."""
    for text in options.bogus_nxdomain:
        try:
            if "%" in text:
                raise ValueError(f"unexpected zone in {text!r}")
            subnet: IPNetwork = ipaddress.ip_network(text, strict=False)
        except ValueError as err:
            logger.error("bad subnet %r: %s", text, err)
            continue
        config.bogus_nxdomain.append(subnet)


def parse_dns64_prefix(prefix: str) -> bytes:
    """Return the NAT64 prefix bytes given as a CIDR or an address.

    An empty prefix means the Well-Known Prefix.  IPv4 addresses are taken
    in their IPv4-mapped IPv6 form.
    """
    if not prefix:
        prefix = DEFAULT_DNS64_PREFIX

    ip: IPAddress | None = None
    if "/" in prefix and "%" not in prefix:
        try:
            ip = ipaddress.ip_interface(prefix).ip
        except ValueError:
            ip = None
    if ip is None:
        try:
            ip = _parse_ip(prefix)
        except ValueError as err:
            raise ConfigureError(f"Invalid DNS64 prefix: {prefix}") from err

    if isinstance(ip, ipaddress.IPv4Address):
        ip = ipaddress.IPv6Address(f"::ffff:{ip}")
    return ip.packed[:NAT64_PREFIX_LENGTH]


def tls_versions(min_version: float, max_version: float) -> tuple[ssl.TLSVersion, ssl.TLSVersion]:
    """Map option values such as 1.2 to TLS versions, defaulting to 1.0 to 1.3."""
    return (
        _MIN_VERSIONS.get(min_version, ssl.TLSVersion.TLSv1),
        _MAX_VERSIONS.get(max_version, ssl.TLSVersion.TLSv1_3),
    )


def new_tls_context(options: Options) -> ssl.SSLContext:
    """Build a server TLS context from the certificate and key files in options."""
    min_version, max_version = tls_versions(options.tls_min_version, options.tls_max_version)
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        context.load_cert_chain(options.tls_cert_path, options.tls_key_path)
    except (OSError, ValueError) as err:
        raise ConfigureError(f"could not load TLS cert: {err}") from err

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DeprecationWarning)
        try:
            context.minimum_version = min_version
            context.maximum_version = max_version
        except ValueError as err:
            raise ConfigureError(f"unsupported TLS version range: {err}") from err
    return context