#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Settings for streaming_setup.

Built in defaults, overridden by an optional YAML file, overridden by
environment variables (a .env file next to the working directory is honored).


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

import yaml
from dotenv import load_dotenv

from exceptions import ConfigurationError

log = logging.getLogger("streaming_setup.settings")

DEFAULT_CONFIG_FILE = "/etc/streaming_setup.yaml"

DEFAULTS = {
    # nginx layout
    "nginx_conf": "/etc/nginx/nginx.conf",
    "sites_available": "/etc/nginx/sites-available",
    "sites_enabled": "/etc/nginx/sites-enabled",
    "site_name": "streaming",
    # web content
    "web_root": "/var/www/html",
    "hls_dir": "/var/www/html/hls",
    "dash_dir": "/var/www/html/dash",
    "index_file": "/var/www/html/index.html",
    "web_user": "www-data",
    "web_group": "www-data",
    # rtmp application
    "rtmp_port": 1935,
    "application": "live",
    "hls_fragment": 3,
    "hls_playlist_length": 60,
    "dash_fragment": 3,
    "dash_playlist_length": 60,
    # certificates
    "letsencrypt_live": "/etc/letsencrypt/live",
    "renewal_job": "/etc/cron.weekly/certbot-renew",
    "certbot_retries": 2,
    "ip_lookup_url": "https://ifconfig.me/ip",
    # run behavior
    "log_file": "/var/log/streaming_setup.log",
    "network_timeout": 30,
    "command_timeout": 900,
    "lock_timeout": 60,
    # domain / email may also be given on the command line
    "domain": None,
    "email": None,
}

env_overrides = {
    "STREAMING_DOMAIN": "domain",
    "STREAMING_EMAIL": "email",
    "STREAMING_NGINX_CONF": "nginx_conf",
    "STREAMING_LOG_FILE": "log_file",
}


def load_config(path=None):
    load_dotenv()

    config = dict(DEFAULTS)
    explicit = path is not None
    path = path or os.getenv("STREAMING_SETUP_CONFIG", DEFAULT_CONFIG_FILE)

    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            try:
                loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as err:
                raise ConfigurationError(f"Could not read {path}: {err}") from err
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"{path} must contain a mapping of settings, got {type(loaded).__name__}")
        for key, value in loaded.items():
            if key not in DEFAULTS:
                log.warning(f"Ignoring unknown setting '{key}' in {path}")
                continue
            config[key] = value
    elif explicit:
        raise ConfigurationError(f"Config file {path} does not exist")

    for env_key, key in env_overrides.items():
        value = os.getenv(env_key)
        if value:
            config[key] = value

    return config
