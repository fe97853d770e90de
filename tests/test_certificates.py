"""Test TLS certificate provisioning."""

import json
import os
import stat
import threading
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID

from helpboard_deployer.certificates import (
    KEEP_RELEASES,
    CertificateProvisioner,
    CertificateRecord,
    CertificateStrategy,
    generate_self_signed,
    inspect_certificate,
)
from helpboard_deployer.errors import DeploymentCancelled

from .fakes import FakeIssuer, FakeResolver

DOMAIN = "helpboard.example.com"


@pytest.fixture
def ssl_dir(tmp_path):
    return tmp_path / "ssl"


def provisioner(ssl_dir, issuer=None, resolver=None, **kwargs):
    return CertificateProvisioner(
        ssl_dir,
        issuer=issuer,
        resolver=resolver or FakeResolver(matches=True),
        retry_delay=0,
        **kwargs,
    )


class TestSelfSigned:
    """Test fallback certificate generation."""

    def test_subject_and_validity(self):
        cert_pem, key_pem = generate_self_signed(DOMAIN, validity_days=365)
        cert = x509.load_pem_x509_certificate(cert_pem)

        assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == DOMAIN
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert san.get_values_for_type(x509.DNSName) == [DOMAIN]
        lifetime = cert.not_valid_after_utc - datetime.now(timezone.utc)
        assert timedelta(days=364) < lifetime <= timedelta(days=365)
        assert b"PRIVATE KEY" in key_pem

    def test_inspect_certificate(self):
        cert_pem, _ = generate_self_signed(DOMAIN, validity_days=10)

        expires_at, fingerprint = inspect_certificate(cert_pem)

        assert expires_at.tzinfo is not None
        assert len(fingerprint) == 64


class TestProvision:
    """Test issuance strategy selection and installation."""

    def test_dns_mismatch_skips_primary(self, ssl_dir):
        issuer = FakeIssuer()

        record = provisioner(ssl_dir, issuer, FakeResolver(matches=False)).provision(DOMAIN)

        assert record.strategy == CertificateStrategy.FALLBACK
        assert issuer.calls == []

    def test_primary_when_dns_matches(self, ssl_dir):
        issuer = FakeIssuer()

        record = provisioner(ssl_dir, issuer).provision(DOMAIN)

        assert record.strategy == CertificateStrategy.PRIMARY
        assert not record.is_fallback
        assert issuer.calls == [DOMAIN]

    def test_primary_failure_falls_back(self, ssl_dir):
        issuer = FakeIssuer(fail=True)

        record = provisioner(ssl_dir, issuer, primary_attempts=2).provision(DOMAIN)

        assert record.strategy == CertificateStrategy.FALLBACK
        assert issuer.calls == [DOMAIN, DOMAIN]

    def test_no_issuer_uses_fallback(self, ssl_dir):
        record = provisioner(ssl_dir).provision(DOMAIN)

        assert record.is_fallback

    def test_installed_layout(self, ssl_dir):
        prov = provisioner(ssl_dir, FakeIssuer())
        record = prov.provision(DOMAIN)

        current = ssl_dir / "current"
        assert current.is_symlink()
        assert not os.path.isabs(os.readlink(current))
        assert (current / "fullchain.pem").exists()
        assert stat.S_IMODE(os.stat(current / "privkey.pem").st_mode) == 0o600
        assert stat.S_IMODE(os.stat(ssl_dir).st_mode) == 0o700

        stored = json.loads(prov.record_path.read_text())
        assert stored["fingerprint"] == record.fingerprint
        assert prov.current().fingerprint == record.fingerprint

    def test_cancelled(self, ssl_dir):
        event = threading.Event()
        event.set()
        prov = provisioner(ssl_dir, FakeIssuer(), cancel_event=event)

        with pytest.raises(DeploymentCancelled):
            prov.provision(DOMAIN)
        assert prov.current() is None


class TestRenew:
    """Test renewal decisions and atomic replacement."""

    def test_first_run_provisions(self, ssl_dir):
        record, renewed = provisioner(ssl_dir, FakeIssuer()).renew(DOMAIN)

        assert renewed
        assert record.strategy == CertificateStrategy.PRIMARY

    def test_not_due(self, ssl_dir):
        issuer = FakeIssuer(validity_days=90)
        prov = provisioner(ssl_dir, issuer, renewal_days=30)
        first, _ = prov.renew(DOMAIN)

        record, renewed = prov.renew(DOMAIN)

        assert not renewed
        assert record.fingerprint == first.fingerprint
        assert len(issuer.calls) == 1

    def test_within_window(self, ssl_dir):
        issuer = FakeIssuer(validity_days=10)
        prov = provisioner(ssl_dir, issuer, renewal_days=30)
        first, _ = prov.renew(DOMAIN)

        record, renewed = prov.renew(DOMAIN)

        assert renewed
        assert record.fingerprint != first.fingerprint

    def test_forced_renewal_replaces_material(self, ssl_dir):
        prov = provisioner(ssl_dir, FakeIssuer())
        first, _ = prov.renew(DOMAIN)
        old_key = (ssl_dir / "current" / "privkey.pem").read_bytes()

        for _ in range(3):
            record, renewed = prov.renew(DOMAIN, force=True)
            assert renewed

        assert record.fingerprint != first.fingerprint
        assert (ssl_dir / "current" / "privkey.pem").read_bytes() != old_key
        assert inspect_certificate((ssl_dir / "current" / "fullchain.pem").read_bytes())[1] == record.fingerprint
        assert len(list((ssl_dir / "releases").iterdir())) == KEEP_RELEASES

    def test_fallback_replaced_once_dns_matches(self, ssl_dir):
        resolver = FakeResolver(matches=False)
        issuer = FakeIssuer()
        prov = provisioner(ssl_dir, issuer, resolver)
        first, _ = prov.renew(DOMAIN)
        assert first.is_fallback

        resolver.result = True
        record, renewed = prov.renew(DOMAIN)

        assert renewed
        assert record.strategy == CertificateStrategy.PRIMARY

    def test_other_domain_reissued(self, ssl_dir):
        prov = provisioner(ssl_dir, FakeIssuer())
        prov.renew("old.example.com")

        record, renewed = prov.renew(DOMAIN)

        assert renewed
        assert record.domain == DOMAIN

    def test_missing_material_counts_as_absent(self, ssl_dir):
        prov = provisioner(ssl_dir, FakeIssuer())
        prov.renew(DOMAIN)
        os.unlink(os.path.realpath(ssl_dir / "current" / "privkey.pem"))

        assert prov.current() is None
        _, renewed = prov.renew(DOMAIN)
        assert renewed


class TestCertificateRecord:
    """Test record helpers."""

    def test_needs_renewal(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        record = CertificateRecord(
            domain=DOMAIN,
            strategy=CertificateStrategy.PRIMARY,
            expires_at=now + timedelta(days=20),
            fingerprint="ab" * 32,
        )

        assert record.needs_renewal(30, now=now)
        assert not record.needs_renewal(10, now=now)
        assert record.days_remaining(now) == 20

    def test_round_trip(self):
        record = CertificateRecord(
            domain=DOMAIN,
            strategy=CertificateStrategy.FALLBACK,
            expires_at=datetime(2027, 1, 1, tzinfo=timezone.utc),
            fingerprint="cd" * 32,
        )

        assert CertificateRecord.from_dict(record.to_dict()) == record
