"""Command-line and configuration-file options."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

PROGRAM = "dnsforward"
VERSION = "dev"

_MAX_UINT32 = 0xFFFFFFFF
_CONFIG_PATH_FLAG = "--config-path"


class _Kind(Enum):
    BOOL = "bool"
    STR = "str"
    INT = "int"
    UINT = "uint"
    FLOAT = "float"
    STR_LIST = "str_list"
    INT_LIST = "int_list"


_LIST_KINDS = (_Kind.STR_LIST, _Kind.INT_LIST)


def _opt(kind: _Kind, long: str, *, yaml_key: str | None = None, short: str | None = None,
         help: str = "", default: Any = None):
    meta = {"kind": kind, "long": long, "yaml": yaml_key, "short": short, "help": help}
    if kind in _LIST_KINDS and default is None:
        return field(default_factory=list, metadata=meta)
    if default is None:
        default = {
            _Kind.BOOL: False,
            _Kind.STR: "",
            _Kind.INT: 0,
            _Kind.UINT: 0,
            _Kind.FLOAT: 0.0,
        }.get(kind)
    return field(default=default, metadata=meta)


@dataclass
class Options:
    """Options given in a YAML file and on the command line."""

    config_path: str = _opt(
        _Kind.STR, "config-path",
        help="YAML configuration file. Options passed on the command line override it.",
    )
    verbose: bool = _opt(_Kind.BOOL, "verbose", yaml_key="verbose", short="v",
                         help="Verbose output (optional)")
    log_output: str = _opt(_Kind.STR, "output", yaml_key="output", short="o",
                           help="Path to the log file. If not set, write to stdout.")

    listen_addrs: list[str] = _opt(_Kind.STR_LIST, "listen", yaml_key="listen-addrs",
                                   short="l", help="Listening addresses")
    listen_ports: list[int] = _opt(
        _Kind.INT_LIST, "port", yaml_key="listen-ports", short="p",
        help="Listening ports. Zero value disables TCP and UDP listeners",
    )
    https_listen_ports: list[int] = _opt(_Kind.INT_LIST, "https-port", yaml_key="https-port",
                                         short="s", help="Listening ports for DNS-over-HTTPS")
    tls_listen_ports: list[int] = _opt(_Kind.INT_LIST, "tls-port", yaml_key="tls-port",
                                       short="t", help="Listening ports for DNS-over-TLS")
    quic_listen_ports: list[int] = _opt(_Kind.INT_LIST, "quic-port", yaml_key="quic-port",
                                        short="q", help="Listening ports for DNS-over-QUIC")
    dnscrypt_listen_ports: list[int] = _opt(_Kind.INT_LIST, "dnscrypt-port",
                                            yaml_key="dnscrypt-port", short="y",
                                            help="Listening ports for DNSCrypt")

    tls_cert_path: str = _opt(_Kind.STR, "tls-crt", yaml_key="tls-crt", short="c",
                              help="Path to a file with the certificate chain")
    tls_key_path: str = _opt(_Kind.STR, "tls-key", yaml_key="tls-key", short="k",
                             help="Path to a file with the private key")
    tls_min_version: float = _opt(_Kind.FLOAT, "tls-min-version", yaml_key="tls-min-version",
                                  help="Minimum TLS version, for example 1.0")
    tls_max_version: float = _opt(_Kind.FLOAT, "tls-max-version", yaml_key="tls-max-version",
                                  help="Maximum TLS version, for example 1.3")
    insecure: bool = _opt(_Kind.BOOL, "insecure", yaml_key="insecure",
                          help="Disable secure TLS certificate validation")
    dnscrypt_config_path: str = _opt(_Kind.STR, "dnscrypt-config", yaml_key="dnscrypt-config",
                                     short="g",
                                     help="Path to a file with DNSCrypt configuration")
    http3: bool = _opt(_Kind.BOOL, "http3", yaml_key="http3", help="Enable HTTP/3 support")

    upstreams: list[str] = _opt(
        _Kind.STR_LIST, "upstream", yaml_key="upstream", short="u",
        help="An upstream to be used (can be specified multiple times). "
             "You can also specify path to a file with the list of servers",
    )
    bootstrap_dns: list[str] = _opt(
        _Kind.STR_LIST, "bootstrap", yaml_key="bootstrap", short="b",
        help="Bootstrap DNS for DoH and DoT, can be specified multiple times "
             "(default: 8.8.8.8:53)",
    )
    # None means no fallback was given at all, which differs from an empty list.
    fallbacks: list[str] | None = field(
        default=None,
        metadata={
            "kind": _Kind.STR_LIST, "long": "fallback", "yaml": "fallback", "short": "f",
            "help": "Fallback resolvers to use when regular ones are unavailable, can be "
                    "specified multiple times. You can also specify path to a file with "
                    "the list of servers",
        },
    )
    all_servers: bool = _opt(
        _Kind.BOOL, "all-servers", yaml_key="all-servers",
        help="If specified, parallel queries to all configured upstream servers are enabled",
    )
    only_ok: bool = _opt(
        _Kind.BOOL, "onlyok", yaml_key="onlyok",
        help="If specified with --all-servers, only successful responses are returned",
    )
    fastest_address: bool = _opt(
        _Kind.BOOL, "fastest-addr", yaml_key="fastest-addr",
        help="Respond to A or AAAA requests only with the fastest IP address",
    )

    cache: bool = _opt(_Kind.BOOL, "cache", yaml_key="cache",
                       help="If specified, DNS cache is enabled")
    cache_size_bytes: int = _opt(_Kind.INT, "cache-size", yaml_key="cache-size",
                                 help="Cache size (in bytes). Default: 64k")
    cache_min_ttl: int = _opt(
        _Kind.UINT, "cache-min-ttl", yaml_key="cache-min-ttl",
        help="Minimum TTL value for DNS entries, in seconds. Capped at 3600.",
    )
    cache_max_ttl: int = _opt(_Kind.UINT, "cache-max-ttl", yaml_key="cache-max-ttl",
                              help="Maximum TTL value for DNS entries, in seconds.")
    cache_optimistic: bool = _opt(_Kind.BOOL, "cache-optimistic", yaml_key="cache-optimistic",
                                  help="If specified, optimistic DNS cache is enabled")

    ratelimit: int = _opt(_Kind.INT, "ratelimit", yaml_key="ratelimit", short="r",
                          help="Ratelimit (requests per second)")
    refuse_any: bool = _opt(_Kind.BOOL, "refuse-any", yaml_key="refuse-any",
                            help="If specified, refuse ANY requests")

    enable_edns_subnet: bool = _opt(_Kind.BOOL, "edns", yaml_key="edns",
                                    help="Use EDNS Client Subnet extension")
    edns_addr: str = _opt(_Kind.STR, "edns-addr", yaml_key="edns-addr",
                          help="Send EDNS Client Address")

    dns64: bool = _opt(_Kind.BOOL, "dns64", yaml_key="dns64",
                       help="If specified, act as a DNS64 server")
    dns64_prefix: str = _opt(
        _Kind.STR, "dns64-prefix", yaml_key="dns64-prefix",
        help="The DNS64 prefix to use when working as a DNS64 server. "
             "Defaults to the Well-Known Prefix 64:ff9b::",
    )

    ipv6_disabled: bool = _opt(
        _Kind.BOOL, "ipv6-disabled", yaml_key="ipv6-disabled",
        help="If specified, all AAAA requests will be replied with NoError RCode "
             "and empty answer",
    )
    bogus_nxdomain: list[str] = _opt(
        _Kind.STR_LIST, "bogus-nxdomain", yaml_key="bogus-nxdomain",
        help="Transform the responses containing at least a single IP that matches "
             "specified addresses and CIDRs into NXDOMAIN. Can be specified multiple times.",
    )
    udp_buffer_size: int = _opt(
        _Kind.INT, "udp-buf-size", yaml_key="udp-buf-size",
        help="Set the size of the UDP buffer in bytes. A value <= 0 will use the "
             "system default.",
    )
    max_go_routines: int = _opt(
        _Kind.INT, "max-go-routines", yaml_key="max-go-routines",
        help="Set the maximum number of concurrent request handlers. A value <= 0 "
             "will not set a maximum.",
    )
    version: bool = _opt(_Kind.BOOL, "version", yaml_key="version",
                         help="Prints the program version")


def _convert_scalar(kind: _Kind, key: str, value: Any) -> Any:
    if kind is _Kind.BOOL:
        if not isinstance(value, bool):
            raise ValueError(f"{key}: expected a boolean, got {value!r}")
        return value
    if kind in (_Kind.INT, _Kind.UINT):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{key}: expected an integer, got {value!r}")
        if kind is _Kind.UINT and not 0 <= value <= _MAX_UINT32:
            raise ValueError(f"{key}: value {value} is out of range")
        return value
    if kind is _Kind.FLOAT:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{key}: expected a number, got {value!r}")
        return float(value)
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValueError(f"{key}: expected a string, got {value!r}")
    return str(value)


def _convert(kind: _Kind, key: str, value: Any) -> Any:
    if kind in _LIST_KINDS:
        if not isinstance(value, list):
            raise ValueError(f"{key}: expected a list, got {value!r}")
        item_kind = _Kind.INT if kind is _Kind.INT_LIST else _Kind.STR
        return [_convert_scalar(item_kind, key, item) for item in value]
    return _convert_scalar(kind, key, value)


def load_config_file(path: str | Path, options: Options) -> Options:
    """Apply the settings of a YAML file to options and return them.

    Raises OSError if the file cannot be read and ValueError if it is not a
    valid configuration.  Unknown keys are ignored.
    """
    text = Path(path).read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as err:
        raise ValueError(f"failed to unmarshal the config file {path}: {err}") from err
    if data is None:
        return options
    if not isinstance(data, dict):
        raise ValueError(f"failed to unmarshal the config file {path}: not a mapping")

    for f in fields(Options):
        key = f.metadata.get("yaml")
        if key is None or key not in data or data[key] is None:
            continue
        setattr(options, f.name, _convert(f.metadata["kind"], key, data[key]))
    return options


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _uint32(text: str) -> int:
    value = int(text)
    if not 0 <= value <= _MAX_UINT32:
        raise argparse.ArgumentTypeError(f"value {text} is out of range")
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog=PROGRAM)
    for f in fields(Options):
        meta = f.metadata
        names = [f"--{meta['long']}"]
        if meta.get("short"):
            names.insert(0, f"-{meta['short']}")
        kwargs: dict[str, Any] = {
            "dest": f.name,
            "default": argparse.SUPPRESS,
            "help": meta.get("help", ""),
        }
        kind = meta["kind"]
        if kind is _Kind.BOOL:
            kwargs["action"] = "store_true"
        elif kind is _Kind.STR_LIST:
            kwargs["action"] = "append"
        elif kind is _Kind.INT_LIST:
            kwargs.update(action="append", type=int)
        elif kind is _Kind.INT:
            kwargs["type"] = int
        elif kind is _Kind.UINT:
            kwargs["type"] = _uint32
        elif kind is _Kind.FLOAT:
            kwargs["type"] = float
        parser.add_argument(*names, **kwargs)
    return parser


def parse_args(argv: Sequence[str] | None = None) -> Options:
    """Build options from a configuration file and command-line arguments.

    A file given as --config-path=PATH is read first, and the command-line
    options then override it.  --version prints the version and exits.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    options = Options()

    for arg in args:
        if arg == "--version":
            print(f"{PROGRAM} version: {VERSION}")
            raise SystemExit(0)
        if len(arg) > len(_CONFIG_PATH_FLAG) and arg.startswith(_CONFIG_PATH_FLAG):
            path = arg[len(_CONFIG_PATH_FLAG) + 1:]
            print(f"Path: {path}")
            load_config_file(path, options)

    namespace = _build_parser().parse_args(args)
    for name, value in vars(namespace).items():
        setattr(options, name, value)
    return options


def load_servers_list(sources: Sequence[str]) -> list[str]:
    """Expand sources into server addresses.

    A source that names a readable file contributes its lines, skipping
    blank lines and comments starting with "!" or "#"; any other source is
    taken as an address itself.
    """
    servers: list[str] = []
    for source in sources:
        try:
            text = Path(source).read_text(encoding="utf-8")
        except (OSError, ValueError):
            servers.append(source)
            continue
        for line in text.split("\n"):
            line = line.strip()
            if not line or line.startswith(("!", "#")):
                continue
            servers.append(line)
    return servers