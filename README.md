# dnsforward

Building blocks for a forwarding DNS proxy, working on `dnspython` messages.

## What is in the package

- `dnsforward.cache` – a response cache. `LRUCache` is a thread-safe,
  byte-keyed cache bounded by the total size of its keys and values.
  `Cache` stores `CacheItem`s (a response and the upstream address that gave
  it) either by question (`get`, `set`) or by client subnet (`get_with_subnet`,
  `set_with_subnet`, matching the longest stored prefix). An optimistic
  `Cache` still returns expired entries, with a TTL of 10 seconds.
  `is_cacheable` follows RFC 2308 for negative answers; `lowest_ttl`,
  `respect_ttl_overrides`, `msg_to_key`, `msg_to_key_with_subnet`,
  `filter_rr_list` and `filter_msg` are available on their own.
- `dnsforward.dns64` – `Dns64Mapper` holds a 12-byte NAT64 prefix and turns
  A answers into AAAA answers; `Dns64Mapper.check` asks for the A records
  through an exchange function you pass in.
- `dnsforward.fastip` – `FastestAddr` asks several upstreams
  (`exchange_all`), dials every returned address over TCP on ports 80 and 443
  (`ping_tcp`), caches the results for ten minutes (`FastestAddrCache`) and
  keeps only the fastest address in the answer.
- `dnsforward.exchange` – `Exchanger` sends requests in load-balance,
  parallel or fastest-address mode (`UpstreamMode`). In load-balance mode it
  tries upstreams from the fastest measured round-trip time and raises
  `AllUpstreamsFailedError` if all fail.
- `dnsforward.helpers` – empty responses carrying a SOA record
  (`gen_empty_message`, `gen_empty_no_error`), the "IPv6 disabled" reply
  (`check_disabled_aaaa_request`) and EDNS Client Subnet handling
  (`ecs_from_msg`, `set_ecs`).
- `dnsforward.bogus` – `is_bogus_nxdomain` tells whether an A/AAAA answer
  holds an address from given subnets.
- `dnsforward.context` – `DNSContext`, the per-request state, with `Proto`
  and `DoQVersion`.
- `dnsforward.errors` – `is_epipe` recognises a broken-pipe error, also when
  it is the cause of another.
- `dnsforward.config` – `Config`, `UpstreamConfig` and `validate_config`,
  which raises `ConfigError` for unusable configurations.
- `dnsforward.options` – `Options`, with `parse_args` (command-line
  arguments over an optional YAML file given as `--config-path=PATH`),
  `load_config_file` and `load_servers_list`.
- `dnsforward.configure` – turns `Options` into listen addresses, the ECS
  address, bogus-NXDOMAIN subnets, a DNS64 prefix (`parse_dns64_prefix`) and
  a server `ssl.SSLContext` (`new_tls_context`); errors raise
  `ConfigureError`.

## Examples

Decide whether a response may be cached, and build its cache key:

```python
import dns.message
import dns.rrset

from dnsforward.cache import is_cacheable, lowest_ttl, msg_to_key

query = dns.message.make_query("example.com.", "A")
reply = dns.message.make_response(query)
reply.answer.append(dns.rrset.from_text("example.com.", 3600, "IN", "A", "192.0.2.1"))

assert is_cacheable(reply)
assert lowest_ttl(reply) == 3600
key = msg_to_key(reply)
```

Answer a request with an empty NOERROR response carrying a SOA record:

```python
import dns.message
import dns.rcode

from dnsforward.helpers import gen_empty_message

query = dns.message.make_query("example.com.", "AAAA")
empty = gen_empty_message(query, dns.rcode.NOERROR, 60)
```

Read upstream addresses, where any entry may instead be a file holding one
address per line (blank lines and lines starting with `#` or `!` are skipped):

```python
from dnsforward.options import load_servers_list

servers = load_servers_list(["192.0.2.53", "upstreams.txt"])
```

## What the package does not do

- It installs no command and runs no server: nothing listens on the
  configured addresses. `parse_args` and `dnsforward.configure` produce a
  `Config`, but serving requests with it is left to the caller.
- It has no upstream transports. `dnsforward.fastip.fastest.Upstream` is an
  abstract class; you supply `exchange` and `address`.
- Expired entries served by an optimistic `Cache` are not refreshed in the
  background; re-resolving them is up to the caller.
- DNSCrypt certificates are only carried in `Config`; they are not read or
  created.

## Development

Install the `test` extra and run the test suite with pytest.