#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Helpers for talking to the host: running commands, installing packages
and controlling the nginx service.


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
import shutil
import signal
import threading
from subprocess import run, CalledProcessError, TimeoutExpired, PIPE, STDOUT, Popen
from pathlib import Path

from exceptions import (
    PrivilegeError,
    UnsupportedPlatformError,
    DependencyInstallError,
    ServiceControlError,
    ValidationError,
)

log = logging.getLogger("streaming_setup.host")
command_log = logging.getLogger("streaming_setup.command")
CMD_LVL = 15
logging.addLevelName(CMD_LVL, "CMD")
SUCCESS_LVL = 25
logging.addLevelName(SUCCESS_LVL, "SUCCESS")

here = Path(__file__).parent

# family: (run before installing, install command, index refresh for the retry, package renames)
package_managers = {
    "debian": ("apt-get update", "apt-get install -y", "apt-get update --fix-missing", {}),
    "redhat": ("yum -y install epel-release", "yum -y install", "yum makecache", {}),
    "suse": (None, "zypper install -y", "zypper refresh", {"python3-certbot-nginx": "python-certbot-nginx"}),
}

# (pattern found in ID / ID_LIKE / NAME, family)
family_patterns = [
    ("ubuntu", "debian"),
    ("debian", "debian"),
    ("raspbian", "debian"),
    ("centos", "redhat"),
    ("rhel", "redhat"),
    ("red hat", "redhat"),
    ("fedora", "redhat"),
    ("rocky", "redhat"),
    ("almalinux", "redhat"),
    ("suse", "suse"),
]


class Distro(object):
    def __init__(self, name, version, family):
        self.name = name
        self.version = version
        self.family = family

    def __repr__(self):
        return f"<Distro {self.name} {self.version} ({self.family})>"


def cmd(command, cwd=here, env=None, timeout=None, **kwargs):
    environ = os.environ.copy()
    if env:
        environ.update(env)

    log.debug(f'Executing from "{cwd}" command: {command} ')
    process = Popen(
        command, shell=True, cwd=cwd, stdout=PIPE, stderr=STDOUT, env=environ, start_new_session=True, **kwargs
    )
    timed_out = threading.Event()

    def expire():
        # kill the whole session, package managers fork helpers that keep stdout open
        timed_out.set()
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            timed_out.clear()

    timer = None
    if timeout:
        timer = threading.Timer(timeout, expire)
        timer.start()
    output_lines = []
    try:
        while True:
            line = process.stdout.readline()
            if line == b"" and process.poll() is not None:
                break
            output = line.decode("utf-8", errors="replace").rstrip()
            if output:
                output_lines.append(output)
                command_log.log(CMD_LVL, output)
        return_code = process.wait()
    finally:
        if timer:
            timer.cancel()
        process.stdout.close()
    if timed_out.is_set():
        raise TimeoutExpired(cmd=command, timeout=timeout, output="\n".join(output_lines))
    if return_code != 0:
        raise CalledProcessError(returncode=return_code, cmd=command, output="\n".join(output_lines))
    return "\n".join(output_lines)


def command_exists(name):
    return shutil.which(name) is not None


def require_root():
    if os.geteuid() != 0:
        raise PrivilegeError("This script requires root / sudo privileges")


def confirm(question, assume_yes=False):
    if assume_yes:
        log.info(f"{question} (y/n) y [--yes]")
        return True
    try:
        reply = input(f"{question} (y/n) ")
    except EOFError:
        return False
    return reply.strip().lower().startswith("y")


def _read_key_values(path):
    values = {}
    for line in path.read_text().splitlines():
        key, sep, value = line.partition("=")
        if sep and not line.lstrip().startswith("#"):
            values[key.strip()] = value.strip().strip("\"'")
    return values


def _family(*hints):
    combined = " ".join(h for h in hints if h).lower()
    for pattern, family in family_patterns:
        if pattern in combined:
            return family
    return None


def detect_distro(os_release=Path("/etc/os-release"), lsb_release=Path("/etc/lsb-release"),
                  debian_version=Path("/etc/debian_version")):
    if os_release.exists():
        info = _read_key_values(os_release)
        name, version = info.get("NAME", ""), info.get("VERSION_ID", "")
        family = _family(info.get("ID"), info.get("ID_LIKE"), name)
    elif command_exists("lsb_release"):
        name = run("lsb_release -si", shell=True, stdout=PIPE).stdout.decode("utf-8").strip()
        version = run("lsb_release -sr", shell=True, stdout=PIPE).stdout.decode("utf-8").strip()
        family = _family(name)
    elif lsb_release.exists():
        info = _read_key_values(lsb_release)
        name, version = info.get("DISTRIB_ID", ""), info.get("DISTRIB_RELEASE", "")
        family = _family(name)
    elif debian_version.exists():
        name, version, family = "Debian", debian_version.read_text().strip(), "debian"
    else:
        uname = os.uname()
        name, version, family = uname.sysname, uname.release, None

    distro = Distro(name, version, family)
    log.info(f"Detected OS: {name} {version}")
    return distro


def install_packages(distro, packages, required_commands=(), timeout=None):
    if distro.family not in package_managers:
        raise UnsupportedPlatformError(
            f"Unsupported Linux distribution '{distro.name}'. Please install {', '.join(packages)} manually."
        )
    prepare, install, refresh, renames = package_managers[distro.family]
    command = f"{install} {' '.join(renames.get(p, p) for p in packages)}"

    log.info(f"Installing {', '.join(packages)}")
    try:
        try:
            if prepare:
                cmd(prepare, timeout=timeout)
            cmd(command, timeout=timeout)
        except CalledProcessError:
            log.warning("Package install failed, refreshing package index and trying once more")
            cmd(refresh, timeout=timeout)
            cmd(command, timeout=timeout)
    except (CalledProcessError, TimeoutExpired) as err:
        raise DependencyInstallError(f"Failed to install dependencies: {err}") from err

    missing = [c for c in required_commands if not command_exists(c)]
    if missing:
        raise DependencyInstallError(f"Failed to install dependencies, still missing: {', '.join(missing)}")
    log.log(SUCCESS_LVL, "Dependencies installed successfully.")


def test_nginx_config(conf=None, timeout=None):
    """Run `nginx -t`, returns (ok, output) so it can be handed to atomic_write as a validator."""
    command = ["nginx", "-t"] + (["-c", str(conf)] if conf else [])
    try:
        result = run(command, stdout=PIPE, stderr=STDOUT, timeout=timeout)
    except FileNotFoundError:
        return False, "nginx executable not found"
    except TimeoutExpired:
        return False, f"nginx -t did not finish within {timeout} seconds"
    output = result.stdout.decode("utf-8", errors="replace")
    for line in output.splitlines():
        command_log.log(CMD_LVL, line)
    return result.returncode == 0, output


def restart_nginx(timeout=None):
    if command_exists("systemctl"):
        command = "systemctl restart nginx"
    elif command_exists("service"):
        command = "service nginx restart"
    else:
        command = "/etc/init.d/nginx restart"
    try:
        cmd(command, timeout=timeout)
    except (CalledProcessError, TimeoutExpired) as err:
        raise ServiceControlError(f"Failed to restart NGINX: {err}") from err
    log.log(SUCCESS_LVL, "NGINX restarted successfully.")


def test_and_restart(timeout=None):
    log.info("Testing NGINX configuration...")
    ok, output = test_nginx_config(timeout=timeout)
    if not ok:
        raise ValidationError("NGINX configuration is invalid", output)
    log.info("NGINX configuration is valid. Restarting NGINX...")
    restart_nginx(timeout=timeout)


def nginx_running():
    return run("pgrep nginx", shell=True, stdout=PIPE, stderr=PIPE).returncode == 0


def rtmp_module_available(modules_enabled=Path("/etc/nginx/modules-enabled")):
    try:
        result = run(["nginx", "-V"], stdout=PIPE, stderr=STDOUT)
    except FileNotFoundError:
        return False
    if "rtmp" in result.stdout.decode("utf-8", errors="replace"):
        return True
    if modules_enabled.is_dir():
        return any("rtmp" in entry.name for entry in modules_enabled.iterdir())
    return False
