import pytest

from dnsforward.options import (
    VERSION,
    Options,
    load_config_file,
    load_servers_list,
    parse_args,
)


def test_defaults():
    opts = Options()
    assert opts.listen_addrs == []
    assert opts.fallbacks is None
    assert opts.cache is False


def test_load_servers_list_plain_addresses(tmp_path):
    missing = str(tmp_path / "missing.txt")
    assert load_servers_list(["8.8.8.8:53", missing]) == ["8.8.8.8:53", missing]


def test_load_servers_list_file(tmp_path):
    path = tmp_path / "servers.txt"
    path.write_text("# comment\n! another\n\n  1.1.1.1  \ntls://dns.example.com\n")
    assert load_servers_list([str(path), "9.9.9.9"]) == [
        "1.1.1.1",
        "tls://dns.example.com",
        "9.9.9.9",
    ]


def test_load_servers_list_directory_is_address(tmp_path):
    assert load_servers_list([str(tmp_path)]) == [str(tmp_path)]


def test_load_config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "listen-addrs: ['127.0.0.1']\n"
        "listen-ports: [5353]\n"
        "upstream: ['8.8.8.8:53']\n"
        "cache: true\n"
        "cache-min-ttl: 20\n"
        "tls-min-version: 1.2\n"
        "unknown-key: 1\n"
    )
    opts = load_config_file(path, Options())
    assert opts.listen_addrs == ["127.0.0.1"]
    assert opts.listen_ports == [5353]
    assert opts.upstreams == ["8.8.8.8:53"]
    assert opts.cache is True
    assert opts.cache_min_ttl == 20
    assert opts.tls_min_version == 1.2


def test_load_config_file_empty(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config_file(path, Options()) == Options()


def test_load_config_file_wrong_type(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("listen-ports: [abc]\n")
    with pytest.raises(ValueError):
        load_config_file(path, Options())


def test_load_config_file_negative_uint(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("cache-max-ttl: -1\n")
    with pytest.raises(ValueError):
        load_config_file(path, Options())


def test_load_config_file_missing(tmp_path):
    with pytest.raises(OSError):
        load_config_file(tmp_path / "nope.yaml", Options())


def test_parse_args_flags():
    opts = parse_args(
        ["-u", "8.8.8.8:53", "--upstream", "1.1.1.1", "-p", "5353", "--cache", "-v",
         "--cache-size", "4096", "--fallback", "9.9.9.9"]
    )
    assert opts.upstreams == ["8.8.8.8:53", "1.1.1.1"]
    assert opts.listen_ports == [5353]
    assert opts.cache is True
    assert opts.verbose is True
    assert opts.cache_size_bytes == 4096
    assert opts.fallbacks == ["9.9.9.9"]


def test_parse_args_config_then_override(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("listen-addrs: ['127.0.0.1']\nlisten-ports: [5353]\nratelimit: 5\n")
    opts = parse_args([f"--config-path={path}", "-p", "5354"])
    assert opts.listen_addrs == ["127.0.0.1"]
    assert opts.listen_ports == [5354]
    assert opts.ratelimit == 5
    assert opts.config_path == str(path)


def test_parse_args_version(capsys):
    with pytest.raises(SystemExit) as exc:
        parse_args(["-u", "8.8.8.8", "--version"])
    assert exc.value.code == 0
    assert VERSION in capsys.readouterr().out


def test_parse_args_bad_value_exits_one():
    with pytest.raises(SystemExit) as exc:
        parse_args(["-p", "abc"])
    assert exc.value.code == 1


def test_parse_args_negative_ttl_exits_one():
    with pytest.raises(SystemExit) as exc:
        parse_args(["--cache-min-ttl", "-5"])
    assert exc.value.code == 1


def test_parse_args_help_exits_zero():
    with pytest.raises(SystemExit) as exc:
        parse_args(["--help"])
    assert exc.value.code == 0