import logging

import pytest

from exceptions import ParseError
from nginx_conf import (
    Block,
    append_directive,
    ensure_block_path,
    ensure_directives,
    find_blocks,
    has_directive,
    parse,
    read_document,
    serialize,
)

DEBIAN_NGINX_CONF = """user www-data;
worker_processes auto;
pid /run/nginx.pid;
include /etc/nginx/modules-enabled/*.conf;

events {
\tworker_connections 768;
\t# multi_accept on;
}

http {

\t##
\t# Basic Settings
\t##

\tsendfile on;
\ttcp_nopush on;
\ttypes_hash_max_size 2048;

\tlog_format main '$remote_addr - {$remote_user}' "[$time_local]";
\tset $cache_key "${scheme}${host}";

\tinclude /etc/nginx/conf.d/*.conf;
\tinclude /etc/nginx/sites-enabled/*;
}

#mail {
#\tserver {
#\t\tlisten     localhost:110;
#\t}
#}
"""

LIVE_ONLY = "rtmp {\n  server {\n    listen 1935;\n    application live {\n      live on;\n    }\n  }\n}"

HLS = [("hls", "on"), ("hls_path", "/var/www/html/hls")]


@pytest.mark.parametrize(
    "text",
    [
        "",
        "\n\n",
        "# only a comment",
        DEBIAN_NGINX_CONF,
        LIVE_ONLY,
        "events{worker_connections 1024;}http{server{listen 80;}}",
        "http {\r\n    server_tokens off; # hide\r\n}\r\n",
        "location ~ \\.(m3u8|ts)$ {\n    return 200 'a;b}c';\n}\n",
    ],
)
def test_round_trip_is_byte_identical(text):
    assert serialize(parse(text)) == text


def test_parse_tree_shape():
    doc = parse(DEBIAN_NGINX_CONF)
    assert [d.name for d in doc.directives()] == ["user", "worker_processes", "pid", "include"]
    assert [b.selector for b in doc.blocks()] == ["events", "http"]

    http = doc.blocks("http")[0]
    assert http.line == 11
    assert http.directives("set")[0].args == '$cache_key "${scheme}${host}"'
    assert has_directive(http, "include", "/etc/nginx/sites-enabled/*")
    assert not has_directive(http, "include", "/etc/nginx/sites-available/*")


def test_selector_is_whitespace_normalized():
    doc = parse("rtmp {\n  server {\n    application   live\n    {\n    }\n  }\n}\n")
    server = doc.blocks("rtmp")[0].blocks("server")[0]
    assert server.blocks("application live")
    assert server.blocks("application  live")


@pytest.mark.parametrize(
    "text, line, message",
    [
        ("http {\n  server {\n", 3, "block 'server' opened on line 2 is not closed"),
        ("worker_processes 1;\n}\n", 2, "unexpected '}'"),
        ("http {\n  listen 80\n}\n", 3, "expecting ';'"),
        ("http {\n  ;\n}\n", 2, "unexpected ';'"),
        ("pid /run/nginx.pid", 1, "unexpected end of file"),
        ("http {\n  return 200 'oops;\n}\n", 2, "unterminated quoted string"),
    ],
)
def test_parse_errors_report_line(text, line, message):
    with pytest.raises(ParseError) as err:
        parse(text)
    assert err.value.line == line
    assert message in str(err.value)
    assert f"line {line}" in str(err.value)


def test_ensure_block_path_creates_chain_once():
    doc = parse("")
    application = ensure_block_path(doc, ["rtmp", "server", "application live"])

    assert serialize(doc) == "rtmp {\n    server {\n        application live {\n        }\n    }\n}\n"
    rtmp = doc.blocks("rtmp")[0]
    server = rtmp.blocks("server")[0]
    assert server.blocks("application live") == [application]
    assert application.parent is server and server.parent is rtmp

    again = ensure_block_path(doc, ["rtmp", "server", "application live"])
    assert again is application
    assert len(list(find_blocks(doc, "application live"))) == 1


def test_ensure_block_path_matches_existing_indentation():
    doc = parse("events {\n\tworker_connections 768;\n}\n")
    server = ensure_block_path(doc, ["rtmp", "server"])
    append_directive(server, "listen", 1935)
    assert serialize(doc) == (
        "events {\n\tworker_connections 768;\n}\n\nrtmp {\n\tserver {\n\t\tlisten 1935;\n\t}\n}\n"
    )


def test_ensure_block_path_warns_on_duplicates(caplog):
    doc = parse("rtmp {\n}\nrtmp {\n    server {\n    }\n}\n")
    with caplog.at_level(logging.WARNING, logger="streaming_setup.nginx_conf"):
        server = ensure_block_path(doc, ["rtmp", "server"])
    assert "Found 2 'rtmp' blocks" in caplog.text
    # the first block wins, even though only the second has a server
    assert server.parent is doc.blocks("rtmp")[0]


def test_insert_hls_after_existing_directives():
    doc = parse(LIVE_ONLY)
    application = ensure_block_path(doc, ["rtmp", "server", "application live"])

    assert ensure_directives(application, HLS, "hls_path") is True
    expected = (
        "rtmp {\n  server {\n    listen 1935;\n    application live {\n      live on;\n"
        "      hls on;\n      hls_path /var/www/html/hls;\n    }\n  }\n}"
    )
    assert serialize(doc) == expected
    assert [d.name for d in application.directives()] == ["live", "hls", "hls_path"]

    assert ensure_directives(application, HLS, "hls_path") is False
    assert serialize(doc) == expected


def test_directives_go_before_nested_blocks():
    doc = parse(LIVE_ONLY)
    server = doc.blocks("rtmp")[0].blocks("server")[0]
    ensure_directives(server, [("chunk_size", 4096)], "chunk_size")
    assert "    listen 1935;\n    chunk_size 4096;\n    application live {" in serialize(doc)


def test_marker_in_comment_or_other_block_does_not_count():
    doc = parse(
        "rtmp {\n    server {\n"
        "        application archive {\n            hls_path /srv/archive;\n        }\n"
        "        application live {\n            # hls_path /tmp/old;\n            live on;\n        }\n"
        "    }\n}\n"
    )
    live = ensure_block_path(doc, ["rtmp", "server", "application live"])
    assert ensure_directives(live, HLS, "hls_path") is True
    assert has_directive(live, "hls_path", "/var/www/html/hls")
    assert "            # hls_path /tmp/old;\n            live on;\n            hls on;\n" in serialize(doc)


def test_trailing_comment_stays_on_its_line():
    doc = parse("server {\n    listen 80; # web\n}\n")
    append_directive(doc.blocks("server")[0], "server_name", "example.com")
    assert serialize(doc) == "server {\n    listen 80; # web\n    server_name example.com;\n}\n"


def test_find_blocks_is_recursive():
    doc = parse("http {\n  server {\n  }\n  server {\n    location / {\n    }\n  }\n}\nserver {\n}\n")
    found = list(find_blocks(doc, "server"))
    assert len(found) == 3
    assert all(isinstance(block, Block) for block in found)


def test_directives_go_after_the_last_directive():
    doc = parse("server {\n    listen 80;\n    location / {\n    }\n    index index.html;\n}\n")
    ensure_directives(doc.blocks("server")[0], [("root", "/srv/www")], "root")
    assert serialize(doc) == (
        "server {\n    listen 80;\n    location / {\n    }\n    index index.html;\n    root /srv/www;\n}\n"
    )


def test_non_utf8_bytes_round_trip(tmp_path):
    conf = tmp_path / "nginx.conf"
    original = b"# caf\xe9\nevents {\n}\n"
    conf.write_bytes(original)
    doc = read_document(conf)
    assert serialize(doc).encode("utf-8", errors="surrogateescape") == original
