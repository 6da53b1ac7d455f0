#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
This script is designed to help automate turning a Linux server running
nginx with the RTMP module into a live streaming server that re-publishes
incoming RTMP streams as HLS and MPEG-DASH over HTTPS.

The steps it will attempt to take:

* Install nginx, certbot and FFmpeg
* Request a TLS certificate for the server's domain and schedule renewal
* Add HLS and DASH output to the RTMP application in nginx.conf
* Create an nginx site serving the HLS / DASH fragments and RTMP stats
* Create index.html status page listing the stream URLs
* Test the configuration and restart nginx


The MIT License

Copyright (c) 2020-2023 Chris Griffith

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in
all copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN
THE SOFTWARE.
"""

import logging
import os
import sys
import shutil
from pathlib import Path
from argparse import ArgumentParser

import requests

from exceptions import (
    EXIT_SUCCESS,
    EXIT_FAILURE,
    EXIT_DECLINED,
    ProvisioningError,
    ConfigurationError,
    ParseError,
    ServiceControlError,
    UserDeclined,
)
from host import (
    SUCCESS_LVL,
    confirm,
    detect_distro,
    install_packages,
    nginx_running,
    require_root,
    rtmp_module_available,
    test_and_restart,
    test_nginx_config,
)
from nginx_conf import (
    append_directive,
    atomic_write,
    ensure_block_path,
    ensure_directives,
    find_blocks,
    has_directive,
    mutate_config,
    read_document,
    read_text,
    serialize,
)
from settings import load_config
from ssl_setup import certificate_exists, prompt_domain, provision_tls, validate_domain

__author__ = "Chris Griffith"
__version__ = "2.0.0"

log = logging.getLogger("streaming_setup")

file_log_format = "%(asctime)s - %(name)-12s  %(levelname)-8s %(message)s"
console_log_format = "%(asctime)s [%(levelname)s] %(message)s"
log_date_format = "%Y-%m-%d %H:%M:%S"

stream_packages = {
    "debian": ["nginx", "libnginx-mod-rtmp", "ffmpeg"],
}
default_stream_packages = ["nginx", "ffmpeg"]


class ProvisioningContext(object):
    """Everything one provisioning run knows, handed from step to step instead of kept in temp files."""

    def __init__(self, settings, domain=None, email=None, assume_yes=False, safe=False):
        self.settings = settings
        self.domain = domain
        self.email = email
        self.assume_yes = assume_yes
        self.safe = safe
        self.distro = None
        self.changed = False


def setup_logging(log_file=None, verbose=False, stream=None):
    log.setLevel(logging.DEBUG)
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()

    sh = logging.StreamHandler(stream or sys.stdout)
    sh.setLevel(logging.DEBUG if verbose else logging.INFO)
    sh.setFormatter(logging.Formatter(console_log_format, log_date_format))
    log.addHandler(sh)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(log_file)
        except OSError as err:
            log.warning(f"Could not write log file {log_file}: {err}")
        else:
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(logging.Formatter(file_log_format, log_date_format))
            log.addHandler(fh)
    return log


def rtmp_path(settings):
    return ["rtmp", "server", f"application {settings['application']}"]


def server_directives(settings):
    return [("listen", settings["rtmp_port"])]


def application_directives(settings):
    return [("live", "on"), ("record", "off")]


def hls_directives(settings):
    return [
        ("hls", "on"),
        ("hls_path", settings["hls_dir"]),
        ("hls_fragment", settings["hls_fragment"]),
        ("hls_playlist_length", settings["hls_playlist_length"]),
    ]


def dash_directives(settings):
    return [
        ("dash", "on"),
        ("dash_path", settings["dash_dir"]),
        ("dash_fragment", settings["dash_fragment"]),
        ("dash_playlist_length", settings["dash_playlist_length"]),
    ]


def ensure_sites_included(doc, settings):
    http_blocks = doc.blocks("http")
    if not http_blocks:
        log.warning("No http block found in nginx.conf, the streaming site will not be loaded")
        return False
    pattern = f"{str(settings['sites_enabled']).rstrip('/')}/*"
    if has_directive(http_blocks[0], "include", pattern):
        return False
    log.info(f"Adding 'include {pattern};' to the http block")
    append_directive(http_blocks[0], "include", pattern)
    return True


def apply_streaming_config(doc, settings):
    """Make sure nginx.conf carries the RTMP application with HLS and DASH output. Returns True if doc changed."""
    before = serialize(doc)

    server = ensure_block_path(doc, rtmp_path(settings)[:2])
    ensure_directives(server, server_directives(settings), "listen")

    application = ensure_block_path(doc, rtmp_path(settings))
    ensure_directives(application, application_directives(settings), "live")

    if ensure_directives(application, hls_directives(settings), "hls_path"):
        log.info("HLS configuration added to NGINX RTMP section.")
    else:
        log.info("HLS configuration already exists in NGINX config.")

    if ensure_directives(application, dash_directives(settings), "dash_path"):
        log.info("DASH configuration added to NGINX RTMP section.")
    else:
        log.info("DASH configuration already exists in NGINX config.")

    ensure_sites_included(doc, settings)
    return serialize(doc) != before


def render_nginx_conf(settings):
    doc = read_document(settings["nginx_conf"])
    apply_streaming_config(doc, settings)
    return serialize(doc)


def prepare_output_dir(directory, user, group):
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    try:
        shutil.chown(directory, user, group)
    except LookupError:
        log.warning(f"User / group {user}:{group} does not exist, not changing owner of {directory}")
    directory.chmod(0o755)


def configure_streaming_protocols(context):
    settings = context.settings
    log.info("Configuring HLS (HTTP Live Streaming) and DASH (Dynamic Adaptive Streaming over HTTP)...")
    for directory in (settings["hls_dir"], settings["dash_dir"]):
        prepare_output_dir(directory, settings["web_user"], settings["web_group"])

    def validator(path):
        return test_nginx_config(conf=path, timeout=settings["command_timeout"])

    if mutate_config(
        settings["nginx_conf"],
        lambda doc: apply_streaming_config(doc, settings),
        validator=validator,
        lock_timeout=settings["lock_timeout"],
    ):
        context.changed = True


def render_site_config(domain, settings, certificate=False, ssl_options=None):
    locations = f"""
    # HLS
    location /hls/ {{
        types {{
            application/vnd.apple.mpegurl m3u8;
            video/mp2t ts;
        }}
        alias {str(settings['hls_dir']).rstrip('/')}/;
        add_header Cache-Control no-cache;
        add_header Access-Control-Allow-Origin *;
    }}

    # DASH
    location /dash/ {{
        types {{
            application/dash+xml mpd;
            video/mp4 mp4 m4v;
            audio/mp4 m4a;
        }}
        alias {str(settings['dash_dir']).rstrip('/')}/;
        add_header Cache-Control no-cache;
        add_header Access-Control-Allow-Origin *;
    }}

    # RTMP stat
    location /stat {{
        rtmp_stat all;
        rtmp_stat_stylesheet stat.xsl;
    }}

    location /stat.xsl {{
        root {settings['web_root']};
    }}

    # Simple status page
    location / {{
        root {settings['web_root']};
        index index.html;
    }}
"""
    if not certificate:
        return f"""server {{
    listen 80;
    server_name {domain};
{locations}}}
"""

    live = Path(settings["letsencrypt_live"], domain)
    options = f"    include {ssl_options};\n" if ssl_options else ""
    return f"""server {{
    listen 80;
    server_name {domain};

    # Redirect all HTTP requests to HTTPS
    return 301 https://$host$request_uri;
}}

server {{
    listen 443 ssl;
    server_name {domain};

    ssl_certificate {live / 'fullchain.pem'};
    ssl_certificate_key {live / 'privkey.pem'};
{options}{locations}}}
"""


def rtmp_url(domain, settings):
    port = "" if int(settings["rtmp_port"]) == 1935 else f":{settings['rtmp_port']}"
    return f"rtmp://{domain}{port}/{settings['application']}"


def render_index_page(domain, settings):
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>Streaming Server</title>
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; max-width: 800px; margin: 0 auto; padding: 20px; }}
        h1 {{ color: #333; }}
        .info {{ background: #f4f4f4; padding: 15px; border-radius: 5px; }}
        code {{ background: #e4e4e4; padding: 2px 5px; border-radius: 3px; font-family: monospace; }}
    </style>
</head>
<body>
    <h1>Streaming Server Status</h1>
    <div class="info">
        <h2>Stream URLs</h2>
        <p>RTMP Stream URL: <code>{rtmp_url(domain, settings)}/stream</code></p>
        <p>HLS Stream URL: <code>https://{domain}/hls/stream.m3u8</code></p>
        <p>DASH Stream URL: <code>https://{domain}/dash/stream.mpd</code></p>
        <h2>Server Status</h2>
        <p>RTMP Statistics: <a href="/stat">View Stats</a></p>
    </div>
</body>
</html>
"""


def parses_cleanly(path):
    try:
        read_document(path)
    except ParseError as err:
        return False, str(err)
    return True, ""


def install_file(target, contents, safe=False, validator=None):
    """Write a generated file unless it is already current. Returns True when written."""
    target = Path(target)
    if target.exists():
        if read_text(target) == contents:
            log.info(f"{target} is already up to date")
            return False
        if safe:
            log.info(f"File {target} already exists. Not overwriting")
            return False
        log.warning(f"File exists at {target}, overwriting")
    target.parent.mkdir(parents=True, exist_ok=True)
    atomic_write(target, contents, validator=validator)
    return True


def enable_site(site_file, enabled_link):
    site_file, enabled_link = Path(site_file), Path(enabled_link)
    if enabled_link.is_symlink() and Path(os.readlink(enabled_link)) == site_file:
        return False
    enabled_link.parent.mkdir(parents=True, exist_ok=True)
    if enabled_link.is_symlink() or enabled_link.exists():
        log.warning(f"Replacing {enabled_link}")
        enabled_link.unlink()
    enabled_link.symlink_to(site_file)
    return True


def configure_http_server(context):
    settings = context.settings
    log.info("Configuring HTTP server for streaming access...")

    site_file = Path(settings["sites_available"], settings["site_name"])
    certificate = certificate_exists(context.domain, settings["letsencrypt_live"])
    if not certificate:
        log.warning(f"No certificate found for {context.domain}, the streams will only be served over plain HTTP")
    ssl_options = Path(settings["letsencrypt_live"]).parent / "options-ssl-nginx.conf"

    site = render_site_config(
        context.domain, settings, certificate=certificate, ssl_options=ssl_options if ssl_options.exists() else None
    )
    if install_file(site_file, site, safe=context.safe, validator=parses_cleanly):
        context.changed = True
    if enable_site(site_file, Path(settings["sites_enabled"], settings["site_name"])):
        context.changed = True
    install_file(settings["index_file"], render_index_page(context.domain, settings), safe=context.safe)
    log.log(SUCCESS_LVL, "HTTP server configuration created for streaming access.")


def discover_domain(site_file):
    """Read the server_name back out of a site file written by an earlier run."""
    site_file = Path(site_file)
    if not site_file.exists():
        return None
    for server in find_blocks(read_document(site_file), "server"):
        for directive in server.directives("server_name"):
            names = [name for name in directive.args.split() if name not in ("_", "localhost")]
            if names:
                return names[0]
    return None


def verify_rtmp_module(context):
    log.info("Verifying NGINX RTMP module...")
    if rtmp_module_available():
        log.log(SUCCESS_LVL, "NGINX RTMP module is installed.")
        return
    log.warning(
        "NGINX RTMP module may not be installed. The script will attempt to configure RTMP, "
        "but you may need to rebuild Nginx with the RTMP module."
    )
    if not confirm("Do you want to continue anyway?", context.assume_yes):
        raise UserDeclined("Script aborted by user.")


def verify_setup(context):
    settings = context.settings
    log.info("Verifying setup...")

    if not nginx_running():
        raise ServiceControlError("NGINX is not running. Please check NGINX logs for errors.")
    log.log(SUCCESS_LVL, "NGINX is running.")

    for label, directory in (("HLS", settings["hls_dir"]), ("DASH", settings["dash_dir"])):
        if not (Path(directory).is_dir() and os.access(directory, os.W_OK)):
            raise ProvisioningError(f"{label} directory {directory} does not exist or is not writable.")
        log.log(SUCCESS_LVL, f"{label} directory exists and is writable.")

    try:
        response = requests.get(f"https://{context.domain}", timeout=settings["network_timeout"])
    except requests.RequestException as err:
        log.warning(f"Could not verify SSL certificate ({err}). Make sure DNS is correctly configured.")
    else:
        if response.status_code == 200:
            log.log(SUCCESS_LVL, "SSL certificate is working correctly.")
        else:
            log.warning(f"https://{context.domain} answered with {response.status_code}")

    log.info("Setup verification completed.")


def configure_streaming(context):
    settings = context.settings
    if not context.domain:
        context.domain = discover_domain(Path(settings["sites_available"], settings["site_name"]))
        if context.domain:
            log.info(f"Using domain name from existing streaming site: {context.domain}")
    context.domain = validate_domain(context.domain or prompt_domain())

    install_packages(
        context.distro,
        stream_packages.get(context.distro.family, default_stream_packages),
        required_commands=("nginx", "ffmpeg"),
        timeout=settings["command_timeout"],
    )
    verify_rtmp_module(context)
    configure_streaming_protocols(context)
    configure_http_server(context)

    if context.changed or not nginx_running():
        test_and_restart(timeout=settings["command_timeout"])
    else:
        log.info("Nothing changed and NGINX is running, not restarting it")
    verify_setup(context)


def show_stream_urls(domain, settings):
    log.info("Stream URLs:")
    log.info(f"  - RTMP: {rtmp_url(domain, settings)}/stream")
    log.info(f"  - HLS:  https://{domain}/hls/stream.m3u8")
    log.info(f"  - DASH: https://{domain}/dash/stream.mpd")
    log.info("To stream to this server, use OBS or similar software with these settings:")
    log.info("  - Service: Custom")
    log.info(f"  - Server: {rtmp_url(domain, settings)}")
    log.info("  - Stream Key: stream")
    log.info(f"Visit https://{domain} to view streaming status.")


steps = {
    "all": ["SSL certificates (with automatic renewal)", "HLS and DASH streaming protocols"],
    "ssl": ["SSL certificates (with automatic renewal)"],
    "stream": ["HLS and DASH streaming protocols"],
}


def provision(command, context):
    require_root()

    log.info("This script will configure:")
    for step in steps[command]:
        log.info(f"  - {step}")
    if not confirm("Do you want to continue?", context.assume_yes):
        raise UserDeclined("Script aborted by user.")

    context.distro = detect_distro()

    if command in ("all", "ssl"):
        log.info("Step: SSL Certificate Configuration")
        provision_tls(context)
    if command in ("all", "stream"):
        log.info("Step: Streaming Protocol Configuration")
        configure_streaming(context)

    log.log(SUCCESS_LVL, "Setup finished successfully!")
    if command in ("all", "stream"):
        show_stream_urls(context.domain, context.settings)


def parse_arguments(argv=None):
    parser = ArgumentParser(prog="streaming_setup", description=f"streaming_setup version {__version__}")
    parser.add_argument("-v", "--version", action="store_true")
    parser.add_argument("-c", "--config", help="YAML settings file (default: /etc/streaming_setup.yaml)")
    parser.add_argument("-y", "--yes", action="store_true", help="answer yes to every question, for automation")
    parser.add_argument("--domain", help="domain name the server is reached at, e.g. stream.example.com")
    parser.add_argument("--email", help="contact email for the certificate (default: webmaster@<domain>)")
    parser.add_argument("--safe", action="store_true", help="disable overwrite of existing site and index files")
    parser.add_argument("--verbose", action="store_true", help="show debug output on the terminal")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("all", help="provision TLS then configure streaming (default)")
    subparsers.add_parser("ssl", help="install certbot, request a certificate and schedule renewal")
    stream = subparsers.add_parser("stream", help="add HLS / DASH to the RTMP server and publish them over HTTP")
    stream.add_argument(
        "--print-config", action="store_true", help="print the updated nginx.conf and exit without changing anything"
    )

    args = parser.parse_args(argv)
    if not args.command:
        args.command = "all"
    return args


def main(argv=None):
    args = parse_arguments(argv)

    if args.version:
        print(f"{__version__}")
        return EXIT_SUCCESS

    try:
        settings = load_config(args.config)
    except (ConfigurationError, OSError) as err:
        setup_logging(verbose=args.verbose)
        log.critical(str(err))
        return EXIT_FAILURE

    if getattr(args, "print_config", False):
        # stdout carries the config
        setup_logging(verbose=args.verbose, stream=sys.stderr)
        try:
            text = render_nginx_conf(settings)
        except (OSError, ProvisioningError) as err:
            log.critical(f"Could not read {settings['nginx_conf']}: {err}")
            return EXIT_FAILURE
        sys.stdout.flush()
        sys.stdout.buffer.write(text.encode("utf-8", errors="surrogateescape"))
        sys.stdout.buffer.flush()
        return EXIT_SUCCESS

    setup_logging(settings["log_file"], verbose=args.verbose)
    context = ProvisioningContext(
        settings,
        domain=args.domain or settings["domain"],
        email=args.email or settings["email"],
        assume_yes=args.yes,
        safe=args.safe,
    )

    log.info(f"Starting streaming_setup {__version__}")
    arg_display = "\n\t".join([f"{k}: {v}" for k, v in vars(args).items()])
    log.debug(f"Using arguments:\n\t{arg_display}")

    try:
        provision(args.command, context)
    except UserDeclined as err:
        log.error(str(err))
        return EXIT_DECLINED
    except ProvisioningError as err:
        log.critical(str(err))
        return EXIT_FAILURE
    except OSError as err:
        log.critical(str(err))
        return EXIT_FAILURE
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
