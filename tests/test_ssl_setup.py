from pathlib import Path
from subprocess import CalledProcessError

import pytest
import requests

import ssl_setup
from exceptions import (
    CertificateIssuanceError,
    ConfigurationError,
    DomainResolutionWarning,
    NetworkTimeoutError,
    UserDeclined,
)
from host import Distro
from ssl_setup import (
    certificate_exists,
    check_domain_points_here,
    install_renewal_job,
    issue_certificate,
    provision_tls,
    public_ip,
    renewal_script,
    validate_domain,
)
from streaming_setup import ProvisioningContext


@pytest.mark.parametrize(
    "domain, expected",
    [("stream.example.com", "stream.example.com"), ("Stream.Example.COM.", "stream.example.com")],
)
def test_validate_domain(domain, expected):
    assert validate_domain(domain) == expected


@pytest.mark.parametrize("domain", ["", "localhost", "-bad.example.com", "exa mple.com", "a..b"])
def test_validate_domain_rejects(domain):
    with pytest.raises(ConfigurationError):
        validate_domain(domain)


def test_domain_points_here(monkeypatch):
    monkeypatch.setattr(ssl_setup, "resolve_domain", lambda domain, timeout=30: ["203.0.113.7"])
    monkeypatch.setattr(ssl_setup, "public_ip", lambda url, timeout=30: "203.0.113.7")
    check_domain_points_here("stream.example.com", "https://ifconfig.me/ip")


@pytest.mark.parametrize(
    "addresses, server_ip, message",
    [
        ([], "203.0.113.7", "Could not resolve IP"),
        (["198.51.100.1"], "203.0.113.7", "resolves to 198.51.100.1"),
        (["203.0.113.7"], None, "Could not determine"),
    ],
)
def test_domain_points_elsewhere(monkeypatch, addresses, server_ip, message):
    monkeypatch.setattr(ssl_setup, "resolve_domain", lambda domain, timeout=30: addresses)
    monkeypatch.setattr(ssl_setup, "public_ip", lambda url, timeout=30: server_ip)
    with pytest.raises(DomainResolutionWarning) as warning:
        check_domain_points_here("stream.example.com", "https://ifconfig.me/ip")
    assert message in str(warning.value)


def test_public_ip_timeout(monkeypatch):
    def slow(url, timeout=None):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(ssl_setup.requests, "get", slow)
    with pytest.raises(NetworkTimeoutError):
        public_ip("https://ifconfig.me/ip", timeout=1)


def test_public_ip_unreachable(monkeypatch):
    def offline(url, timeout=None):
        raise requests.ConnectionError("no route to host")

    monkeypatch.setattr(ssl_setup.requests, "get", offline)
    assert public_ip("https://ifconfig.me/ip", timeout=1) is None


@pytest.fixture
def certbot(monkeypatch):
    runs = []
    outcome = {"failures": 0}

    def fake_cmd(command, timeout=None, **kwargs):
        runs.append(command)
        if outcome["failures"]:
            outcome["failures"] -= 1
            raise CalledProcessError(1, command)
        return ""

    monkeypatch.setattr(ssl_setup, "cmd", fake_cmd)
    monkeypatch.setattr(ssl_setup.time, "sleep", lambda seconds: None)
    return runs, outcome


def test_issue_certificate_retries(certbot):
    runs, outcome = certbot
    outcome["failures"] = 2
    issue_certificate("stream.example.com", "ops@example.com", retries=2)
    assert len(runs) == 3
    assert runs[0] == (
        "certbot --nginx -d stream.example.com --non-interactive --agree-tos --email ops@example.com --redirect"
    )


def test_issue_certificate_gives_up(certbot):
    runs, outcome = certbot
    outcome["failures"] = 5
    with pytest.raises(CertificateIssuanceError):
        issue_certificate("stream.example.com", "ops@example.com", retries=1)
    assert len(runs) == 2


def test_certificate_exists(tmp_path):
    live = tmp_path / "live"
    assert not certificate_exists("stream.example.com", live)
    (live / "stream.example.com").mkdir(parents=True)
    (live / "stream.example.com" / "fullchain.pem").write_text("cert")
    assert not certificate_exists("stream.example.com", live)
    (live / "stream.example.com" / "privkey.pem").write_text("key")
    assert certificate_exists("stream.example.com", live)


def test_install_renewal_job(tmp_path):
    job = tmp_path / "cron.weekly" / "certbot-renew"
    install_renewal_job(job)
    install_renewal_job(job)
    assert job.read_text() == renewal_script
    assert job.stat().st_mode & 0o777 == 0o755


@pytest.fixture
def tls_host(monkeypatch, certbot):
    steps = []
    monkeypatch.setattr(ssl_setup, "install_packages", lambda *args, **kwargs: steps.append("install"))
    monkeypatch.setattr(ssl_setup, "test_and_restart", lambda timeout=None: steps.append("restart"))
    monkeypatch.setattr(ssl_setup, "check_domain_points_here", lambda *args, **kwargs: None)
    return steps


def test_provision_tls(settings, tls_host, certbot):
    runs, _ = certbot
    context = ProvisioningContext(settings, domain="Stream.Example.com")
    context.distro = Distro("Ubuntu", "22.04", "debian")

    provision_tls(context)

    assert context.domain == "stream.example.com"
    assert tls_host == ["install", "restart"]
    assert "--email webmaster@stream.example.com" in runs[0]
    assert Path(settings["renewal_job"]).read_text() == renewal_script


def test_provision_tls_skips_existing_certificate(settings, tls_host, certbot):
    runs, _ = certbot
    live = settings["letsencrypt_live"] + "/stream.example.com"
    for name in ("fullchain.pem", "privkey.pem"):
        path = Path(live, name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(name)

    context = ProvisioningContext(settings, domain="stream.example.com", email="ops@example.com")
    context.distro = Distro("Ubuntu", "22.04", "debian")
    provision_tls(context)
    assert runs == []


def test_provision_tls_declined_when_dns_is_wrong(settings, tls_host, monkeypatch):
    def wrong_dns(*args, **kwargs):
        raise DomainResolutionWarning("Domain stream.example.com resolves to 198.51.100.1")

    monkeypatch.setattr(ssl_setup, "check_domain_points_here", wrong_dns)
    monkeypatch.setattr(ssl_setup, "confirm", lambda question, assume_yes=False: assume_yes)

    context = ProvisioningContext(settings, domain="stream.example.com")
    context.distro = Distro("Ubuntu", "22.04", "debian")
    with pytest.raises(UserDeclined):
        provision_tls(context)
    assert tls_host == ["install"]

    context.assume_yes = True
    provision_tls(context)
    assert tls_host == ["install", "install", "restart"]
