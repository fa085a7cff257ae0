"""Proxy configuration and its validation."""

from __future__ import annotations

import ipaddress
import logging
import ssl
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from dnsforward.exchange import UpstreamMode
from dnsforward.fastip.fastest import Upstream

logger = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network
ListenAddr = tuple[IPAddress, int]

BeforeRequestHandler = Callable[[Any, Any], bool]
"""Called before each request; returning False drops the request."""

RequestHandler = Callable[[Any, Any], None]
"""Called instead of the default resolving of a request."""

ResponseHandler = Callable[[Any, "BaseException | None"], None]
"""Called once a request has been processed."""


class ConfigError(Exception):
    """Raised when a configuration cannot be used."""


@dataclass
class UpstreamConfig:
    """Default upstreams and upstreams reserved for particular domains."""

    upstreams: list[Upstream] = field(default_factory=list)
    domain_reserved_upstreams: dict[str, list[Upstream]] = field(default_factory=dict)


@dataclass
class Config:
    """Everything needed to run the proxy.

    A listen address list of None means that the proxy does not listen on
    that protocol; an empty list still counts as configured.
    """

    udp_listen_addr: list[ListenAddr] | None = None
    tcp_listen_addr: list[ListenAddr] | None = None
    https_listen_addr: list[ListenAddr] | None = None
    tls_listen_addr: list[ListenAddr] | None = None
    quic_listen_addr: list[ListenAddr] | None = None
    dnscrypt_udp_listen_addr: list[ListenAddr] | None = None
    dnscrypt_tcp_listen_addr: list[ListenAddr] | None = None

    tls_config: ssl.SSLContext | None = None
    http3: bool = False
    dnscrypt_provider_name: str = ""
    dnscrypt_resolver_cert: Any = None

    ratelimit: int = 0
    ratelimit_whitelist: list[str] = field(default_factory=list)
    refuse_any: bool = False
    trusted_proxies: list[str] = field(default_factory=list)

    upstream_config: UpstreamConfig | None = None
    fallbacks: list[Upstream] = field(default_factory=list)
    upstream_mode: UpstreamMode = UpstreamMode.LOAD_BALANCE
    only_ok: bool = False
    fastest_ping_timeout: float = 0.0

    bogus_nxdomain: list[IPNetwork] = field(default_factory=list)

    enable_edns_client_subnet: bool = False
    edns_addr: IPAddress | None = None

    cache_enabled: bool = False
    cache_size_bytes: int = 0
    cache_min_ttl: int = 0
    cache_max_ttl: int = 0
    cache_optimistic: bool = False

    before_request_handler: BeforeRequestHandler | None = None
    request_handler: RequestHandler | None = None
    response_handler: ResponseHandler | None = None

    max_goroutines: int = 0
    udp_buffer_size: int = 0

    def has_listen_addrs(self) -> bool:
        """Return True if any listen address is configured."""
        return any(
            addrs is not None
            for addrs in (
                self.udp_listen_addr,
                self.tcp_listen_addr,
                self.tls_listen_addr,
                self.https_listen_addr,
                self.quic_listen_addr,
                self.dnscrypt_udp_listen_addr,
                self.dnscrypt_tcp_listen_addr,
            )
        )

    def validate_listen_addrs(self) -> None:
        """Raise ConfigError if the listeners cannot be created."""
        if not self.has_listen_addrs():
            raise ConfigError("no listen address specified")

        if self.tls_config is None:
            if self.tls_listen_addr is not None:
                raise ConfigError("cannot create tls listener without tls config")
            if self.https_listen_addr is not None:
                raise ConfigError("cannot create https listener without tls config")
            if self.quic_listen_addr is not None:
                raise ConfigError("cannot create quic listener without tls config")

        wants_dnscrypt = (
            self.dnscrypt_tcp_listen_addr is not None
            or self.dnscrypt_udp_listen_addr is not None
        )
        has_dnscrypt = (
            self.dnscrypt_resolver_cert is not None and self.dnscrypt_provider_name != ""
        )
        if wants_dnscrypt and not has_dnscrypt:
            raise ConfigError("cannot create dnscrypt listener without dnscrypt config")


def validate_config(config: Config, started: bool = False) -> None:
    """Raise ConfigError unless config can be used to start a proxy."""
    if started:
        raise ConfigError("server has been already started")

    config.validate_listen_addrs()

    upstream_config = config.upstream_config
    if upstream_config is None:
        raise ConfigError("no default upstreams specified")

    if not upstream_config.upstreams:
        if not upstream_config.domain_reserved_upstreams:
            raise ConfigError("no upstreams specified")
        raise ConfigError("no default upstreams specified")

    if config.cache_min_ttl > 0 or config.cache_max_ttl > 0:
        logger.info(
            "Cache TTL override is enabled. Min=%d, Max=%d",
            config.cache_min_ttl,
            config.cache_max_ttl,
        )
    if config.ratelimit > 0:
        logger.info("Ratelimit is enabled and set to %d rps", config.ratelimit)
    if config.refuse_any:
        logger.info("The server is configured to refuse ANY requests")
    if config.bogus_nxdomain:
        logger.info("%d bogus-nxdomain IP specified", len(config.bogus_nxdomain))