#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
TLS certificate provisioning for the streaming server.

The steps it will attempt to take:

* Install nginx and certbot
* Make sure the domain points at this server (or have the operator confirm)
* Request a certificate with certbot's nginx plugin
* Test the nginx configuration and restart it
* Install a weekly job that renews the certificate and restarts nginx


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
import re
import shlex
import socket
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from pathlib import Path
from subprocess import CalledProcessError, TimeoutExpired

import requests

from exceptions import (
    CertificateIssuanceError,
    ConfigurationError,
    DomainResolutionWarning,
    NetworkTimeoutError,
    UserDeclined,
)
from host import SUCCESS_LVL, cmd, confirm, install_packages, test_and_restart

log = logging.getLogger("streaming_setup.ssl")

ssl_packages = ["nginx", "certbot", "python3-certbot-nginx"]
retry_delay = 15

renewal_script = """#!/bin/bash
certbot renew --quiet --no-self-upgrade

# Restart Nginx after renewal
if command -v systemctl >/dev/null 2>&1; then
    systemctl restart nginx
elif command -v service >/dev/null 2>&1; then
    service nginx restart
else
    /etc/init.d/nginx restart
fi
"""

hostname_label = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$", re.IGNORECASE)


def prompt_domain():
    try:
        return input("Enter your domain name (e.g., stream.example.com): ").strip()
    except EOFError:
        return ""


def validate_domain(domain):
    if not domain:
        raise ConfigurationError("Domain name cannot be empty.")
    labels = domain.rstrip(".").split(".")
    if len(domain) > 253 or len(labels) < 2 or not all(hostname_label.match(label) for label in labels):
        raise ConfigurationError(f"'{domain}' is not a valid domain name.")
    return domain.rstrip(".").lower()


def resolve_domain(domain, timeout=30):
    # getaddrinfo has no timeout of its own
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(socket.getaddrinfo, domain, None, socket.AF_INET, socket.SOCK_STREAM)
        results = future.result(timeout=timeout)
    except socket.gaierror:
        return []
    except FutureTimeout:
        raise NetworkTimeoutError(f"Resolving {domain} took longer than {timeout} seconds")
    finally:
        executor.shutdown(wait=False)
    return sorted({result[4][0] for result in results})


def public_ip(url, timeout=30):
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.Timeout as err:
        raise NetworkTimeoutError(f"Looking up this server's IP at {url} timed out") from err
    except requests.RequestException as err:
        log.debug(f"IP lookup failed: {err}")
        return None
    return response.text.strip()


def check_domain_points_here(domain, ip_lookup_url, timeout=30):
    addresses = resolve_domain(domain, timeout=timeout)
    if not addresses:
        raise DomainResolutionWarning(
            f"Could not resolve IP for {domain}. Make sure DNS is correctly configured."
        )
    server_ip = public_ip(ip_lookup_url, timeout=timeout)
    if not server_ip:
        raise DomainResolutionWarning(f"Could not determine this server's public IP to compare with {domain}.")
    if server_ip not in addresses:
        raise DomainResolutionWarning(
            f"Domain {domain} resolves to {', '.join(addresses)} but this server's IP is {server_ip}."
        )
    log.info(f"{domain} resolves to this server ({server_ip})")


def certificate_exists(domain, live_dir):
    live = Path(live_dir, domain)
    return (live / "fullchain.pem").exists() and (live / "privkey.pem").exists()


def issue_certificate(domain, email, retries=2, timeout=None):
    command = (
        f"certbot --nginx -d {shlex.quote(domain)} --non-interactive --agree-tos "
        f"--email {shlex.quote(email)} --redirect"
    )
    attempts = retries + 1
    for attempt in range(1, attempts + 1):
        log.info(f"Running Certbot for {domain}...")
        try:
            cmd(command, timeout=timeout)
        except TimeoutExpired as err:
            raise CertificateIssuanceError(f"Certbot did not finish within {timeout} seconds") from err
        except CalledProcessError as err:
            if attempt == attempts:
                raise CertificateIssuanceError(f"Failed to install SSL certificate for {domain}") from err
            log.warning(f"Certbot failed (attempt {attempt} of {attempts}), retrying in {retry_delay} seconds")
            time.sleep(retry_delay)
        else:
            log.log(SUCCESS_LVL, f"SSL certificate installed successfully for {domain}.")
            return


def install_renewal_job(renewal_job):
    log.info("Setting up automatic SSL renewal...")
    renewal_job = Path(renewal_job)
    if renewal_job.exists() and renewal_job.read_text() == renewal_script:
        log.info(f"Renewal job {renewal_job} already in place")
    else:
        renewal_job.parent.mkdir(parents=True, exist_ok=True)
        renewal_job.write_text(renewal_script)
    renewal_job.chmod(0o755)
    log.log(SUCCESS_LVL, "Automatic SSL renewal configured.")


def provision_tls(context):
    settings = context.settings
    install_packages(
        context.distro, ssl_packages, required_commands=("nginx", "certbot"), timeout=settings["command_timeout"]
    )

    log.info("Installing SSL certificate...")
    context.domain = validate_domain(context.domain or prompt_domain())
    email = context.email or f"webmaster@{context.domain}"

    try:
        check_domain_points_here(context.domain, settings["ip_lookup_url"], timeout=settings["network_timeout"])
    except DomainResolutionWarning as warning:
        log.warning(str(warning))
        if not confirm("Do you want to continue anyway?", context.assume_yes):
            raise UserDeclined("SSL installation aborted.")

    if certificate_exists(context.domain, settings["letsencrypt_live"]):
        log.info(f"A certificate for {context.domain} already exists, leaving renewal to certbot")
    else:
        issue_certificate(
            context.domain, email, retries=settings["certbot_retries"], timeout=settings["command_timeout"]
        )

    test_and_restart(timeout=settings["command_timeout"])
    install_renewal_job(settings["renewal_job"])

    log.info(f"SSL certificate location: {Path(settings['letsencrypt_live'], context.domain)}")
