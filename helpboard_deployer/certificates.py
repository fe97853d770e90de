"""
TLS certificate provisioning for the reverse proxy.

Handles:
- DNS vs public address verification before ACME issuance
- Let's Encrypt issuance through the certbot container (webroot challenge)
- Self-signed fallback that always succeeds
- Atomic installation (new release directory, then symlink swap)
- Expiry tracking and renewal
"""

import os
import json
import socket
import shutil
import subprocess
import threading
import logging
from pathlib import Path
from typing import Optional, Dict, List, Any, Set, Tuple, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

import requests
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import CertificateError, DeploymentCancelled

logger = logging.getLogger(__name__)


PUBLIC_ADDRESS_SOURCES = ("https://ipinfo.io/ip", "https://ifconfig.me/ip")

CURRENT_LINK = "current"
RECORD_FILE = "certificate.json"
KEEP_RELEASES = 2


class CertificateStrategy(Enum):
    """How a certificate was obtained."""
    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass
class CertificateRecord:
    """An installed certificate."""
    domain: str
    strategy: CertificateStrategy
    expires_at: datetime
    fingerprint: str
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cert_path: Optional[Path] = None
    key_path: Optional[Path] = None

    @property
    def is_fallback(self) -> bool:
        return self.strategy == CertificateStrategy.FALLBACK

    def days_remaining(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds() / 86400

    def needs_renewal(self, window_days: int, now: Optional[datetime] = None) -> bool:
        return self.days_remaining(now) <= window_days

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "strategy": self.strategy.value,
            "expires_at": self.expires_at.isoformat(),
            "fingerprint": self.fingerprint,
            "issued_at": self.issued_at.isoformat(),
            "cert_path": str(self.cert_path) if self.cert_path else None,
            "key_path": str(self.key_path) if self.key_path else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CertificateRecord":
        return cls(
            domain=data["domain"],
            strategy=CertificateStrategy(data["strategy"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            fingerprint=data["fingerprint"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            cert_path=Path(data["cert_path"]) if data.get("cert_path") else None,
            key_path=Path(data["key_path"]) if data.get("key_path") else None,
        )


class PublicAddressResolver:
    """Compares a domain's public DNS answer with this host's public address."""

    def __init__(self, sources: Tuple[str, ...] = PUBLIC_ADDRESS_SOURCES, timeout_seconds: float = 10.0):
        self.sources = sources
        self.timeout_seconds = timeout_seconds

    def resolve_domain(self, domain: str) -> Set[str]:
        try:
            infos = socket.getaddrinfo(domain, None, socket.AF_INET)
        except socket.gaierror as e:
            logger.warning(f"DNS lookup failed for {domain}: {e}")
            return set()
        return {info[4][0] for info in infos}

    def public_address(self) -> Optional[str]:
        for url in self.sources:
            try:
                response = requests.get(url, timeout=self.timeout_seconds)
                if response.status_code == 200 and response.text.strip():
                    return response.text.strip()
            except requests.RequestException as e:
                logger.warning(f"Public address lookup via {url} failed: {e}")
        return None

    def matches(self, domain: str) -> bool:
        addresses = self.resolve_domain(domain)
        public = self.public_address()
        logger.info(f"Domain {domain} resolves to {sorted(addresses) or '-'}; host address is {public or '-'}")
        return public is not None and public in addresses


class CertbotIssuer:
    """
    Let's Encrypt issuance through the certbot/certbot image.

    A throwaway nginx container serves the webroot on port 80 for the
    HTTP-01 challenge while certbot runs.
    """

    def __init__(
        self,
        certbot_dir: Path,
        http_port: int = 80,
        timeout_seconds: int = 300,
        prepare: Optional[Callable[[], None]] = None,
    ):
        self.certbot_dir = certbot_dir
        self.http_port = http_port
        self.timeout_seconds = timeout_seconds
        # Frees the HTTP port, e.g. by stopping a running proxy
        self.prepare = prepare

    @property
    def webroot(self) -> Path:
        return self.certbot_dir / "www"

    @property
    def conf_dir(self) -> Path:
        return self.certbot_dir / "conf"

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_seconds)
        except (subprocess.TimeoutExpired, FileNotFoundError) as e:
            raise CertificateError(f"{cmd[0]} failed: {e}")

    def issue(self, domain: str, email: str, staging: bool = False) -> Tuple[bytes, bytes]:
        """Return (fullchain PEM, private key PEM)."""
        self.webroot.mkdir(parents=True, exist_ok=True)
        self.conf_dir.mkdir(parents=True, exist_ok=True)
        if self.prepare:
            self.prepare()

        challenge = self._run([
            "docker", "run", "--rm", "-d", "--name", "helpboard_acme_challenge",
            "-p", f"{self.http_port}:80",
            "-v", f"{self.webroot}:/usr/share/nginx/html:ro",
            "nginx:alpine",
        ])
        if challenge.returncode != 0:
            raise CertificateError(f"Could not start challenge server: {challenge.stderr.strip()}")

        try:
            cmd = [
                "docker", "run", "--rm",
                "-v", f"{self.conf_dir}:/etc/letsencrypt",
                "-v", f"{self.webroot}:/var/www/certbot",
                "certbot/certbot", "certonly",
                "--webroot", "--webroot-path=/var/www/certbot",
                "--email", email, "--agree-tos", "--no-eff-email", "--non-interactive",
                "--keep-until-expiring",
                "-d", domain,
            ]
            if staging:
                cmd.append("--staging")
            result = self._run(cmd)
            if result.returncode != 0:
                raise CertificateError(f"certbot failed: {result.stderr.strip()[-500:]}")
        finally:
            subprocess.run(["docker", "stop", "helpboard_acme_challenge"], capture_output=True)

        live = self.conf_dir / "live" / domain
        try:
            return (live / "fullchain.pem").read_bytes(), (live / "privkey.pem").read_bytes()
        except OSError as e:
            raise CertificateError(f"certbot reported success but material is missing: {e}")


def generate_self_signed(domain: str, validity_days: int = 365) -> Tuple[bytes, bytes]:
    """Self-signed RSA-2048 certificate for domain. Returns (cert PEM, key PEM)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "HelpBoard"),
        x509.NameAttribute(NameOID.COMMON_NAME, domain),
    ])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert.public_bytes(serialization.Encoding.PEM), key_pem


def inspect_certificate(cert_pem: bytes) -> Tuple[datetime, str]:
    """Expiry and SHA-256 fingerprint of the leaf certificate in a PEM chain."""
    cert = x509.load_pem_x509_certificate(cert_pem)
    return cert.not_valid_after_utc, cert.fingerprint(hashes.SHA256()).hex()


class CertificateProvisioner:
    """
    Obtains a certificate for the proxy and never blocks deployment.

    Primary issuance is attempted only when the domain resolves to this
    host; any failure falls back to a self-signed certificate.
    """

    def __init__(
        self,
        ssl_dir: Path,
        issuer: Optional[CertbotIssuer] = None,
        resolver: Optional[PublicAddressResolver] = None,
        email: str = "",
        staging: bool = False,
        validity_days: int = 365,
        renewal_days: int = 30,
        primary_attempts: int = 2,
        retry_delay: float = 5.0,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.ssl_dir = ssl_dir
        self.issuer = issuer
        self.resolver = resolver or PublicAddressResolver()
        self.email = email
        self.staging = staging
        self.validity_days = validity_days
        self.renewal_days = renewal_days
        self.primary_attempts = primary_attempts
        self.retry_delay = retry_delay
        self.cancel_event = cancel_event or threading.Event()

    @property
    def record_path(self) -> Path:
        return self.ssl_dir / RECORD_FILE

    @property
    def current_dir(self) -> Path:
        return self.ssl_dir / CURRENT_LINK

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise DeploymentCancelled("certificate provisioning cancelled")

    def provision(self, domain: str) -> CertificateRecord:
        """Issue and install a certificate; the fallback always succeeds."""
        self._check_cancelled()
        if self.issuer is None:
            logger.info("No primary issuer configured, using self-signed certificate")
        elif self.resolver.matches(domain):
            try:
                return self._provision_primary(domain)
            except CertificateError as e:
                logger.warning(f"Primary certificate issuance failed, falling back: {e}")
        else:
            logger.warning(f"DNS for {domain} does not point at this host, skipping ACME issuance")

        self._check_cancelled()
        cert_pem, key_pem = generate_self_signed(domain, self.validity_days)
        record = self._install(domain, CertificateStrategy.FALLBACK, cert_pem, key_pem)
        logger.info(f"Self-signed certificate installed for {domain} (expires {record.expires_at:%Y-%m-%d})")
        return record

    def _provision_primary(self, domain: str) -> CertificateRecord:
        last_error: Optional[CertificateError] = None
        for attempt in range(1, self.primary_attempts + 1):
            self._check_cancelled()
            try:
                cert_pem, key_pem = self.issuer.issue(domain, self.email, staging=self.staging)
                record = self._install(domain, CertificateStrategy.PRIMARY, cert_pem, key_pem)
                logger.info(f"Let's Encrypt certificate installed for {domain} (expires {record.expires_at:%Y-%m-%d})")
                return record
            except CertificateError as e:
                last_error = e
                logger.warning(f"ACME attempt {attempt}/{self.primary_attempts} failed: {e}")
                if attempt < self.primary_attempts and self.cancel_event.wait(self.retry_delay):
                    raise DeploymentCancelled("certificate provisioning cancelled")
        raise last_error or CertificateError("primary issuance failed")

    def _install(
        self,
        domain: str,
        strategy: CertificateStrategy,
        cert_pem: bytes,
        key_pem: bytes,
    ) -> CertificateRecord:
        """Write a new release directory, then atomically repoint the current link."""
        try:
            expires_at, fingerprint = inspect_certificate(cert_pem)
        except ValueError as e:
            raise CertificateError(f"Issued certificate is not valid PEM: {e}")

        self.ssl_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.ssl_dir, 0o700)
        releases = self.ssl_dir / "releases"
        release = releases / datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        release.mkdir(parents=True)

        cert_file = release / "fullchain.pem"
        key_file = release / "privkey.pem"
        cert_file.write_bytes(cert_pem)
        os.chmod(cert_file, 0o644)
        key_fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(key_fd, "wb") as f:
            f.write(key_pem)

        record = CertificateRecord(
            domain=domain,
            strategy=strategy,
            expires_at=expires_at,
            fingerprint=fingerprint,
            cert_path=self.current_dir / "fullchain.pem",
            key_path=self.current_dir / "privkey.pem",
        )
        with open(release / RECORD_FILE, "w") as f:
            json.dump(record.to_dict(), f, indent=2)

        # Relative link so the path also resolves inside the proxy container
        tmp_link = self.ssl_dir / f".{CURRENT_LINK}.tmp"
        if tmp_link.is_symlink() or tmp_link.exists():
            tmp_link.unlink()
        os.symlink(os.path.relpath(release, self.ssl_dir), tmp_link)
        os.replace(tmp_link, self.current_dir)

        tmp_record = self.ssl_dir / f".{RECORD_FILE}.tmp"
        with open(tmp_record, "w") as f:
            json.dump(record.to_dict(), f, indent=2)
        os.replace(tmp_record, self.record_path)

        self._prune_releases(releases)
        return record

    def _prune_releases(self, releases: Path):
        existing = sorted(p for p in releases.iterdir() if p.is_dir())
        for old in existing[:-KEEP_RELEASES]:
            shutil.rmtree(old, ignore_errors=True)

    def current(self) -> Optional[CertificateRecord]:
        """The installed certificate, or None when missing or unreadable."""
        if not self.record_path.exists():
            return None
        try:
            with open(self.record_path) as f:
                record = CertificateRecord.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Unreadable certificate record {self.record_path}: {e}")
            return None
        if not (self.current_dir / "fullchain.pem").exists() or not (self.current_dir / "privkey.pem").exists():
            logger.warning("Certificate record present but material is missing")
            return None
        return record

    def renew(self, domain: str, force: bool = False) -> Tuple[CertificateRecord, bool]:
        """
        Re-provision when forced, missing, near expiry, for another domain,
        or self-signed while DNS now points here. Returns (record, renewed).
        """
        record = self.current()
        reason = None
        if force:
            reason = "forced"
        elif record is None:
            reason = "no usable certificate"
        elif record.domain != domain:
            reason = f"certificate is for {record.domain}"
        elif record.needs_renewal(self.renewal_days):
            reason = f"expires in {record.days_remaining():.0f} day(s)"
        elif record.is_fallback and self.issuer is not None and self.resolver.matches(domain):
            reason = "self-signed certificate can now be replaced"

        if reason is None:
            logger.info(f"Certificate for {domain} is current ({record.days_remaining():.0f} days left)")
            return record, False

        logger.info(f"Renewing certificate for {domain}: {reason}")
        return self.provision(domain), True
