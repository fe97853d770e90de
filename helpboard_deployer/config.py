"""
Configuration management for the HelpBoard deployer.

Handles:
- Loading key/value configuration from .env files, an optional YAML
  tuning file and the process environment
- Validating every key in one pass before anything is mutated
- The strongly-typed DeployConfig passed explicitly to every component
- Secrets generation and credential hashing
"""

import os
import re
import secrets
import string
import hashlib
import base64
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Mapping, Callable, Tuple
from urllib.parse import urlparse, unquote
import logging

import bcrypt
import yaml
from dotenv import dotenv_values

from .errors import ValidationError

logger = logging.getLogger(__name__)


REQUIRED_KEYS = ("DOMAIN", "DATABASE_URL", "PGPASSWORD", "OPENAI_API_KEY", "SESSION_SECRET")

# Template value shipped in the original .env.example files
PLACEHOLDER_VALUES = {"your_openai_api_key_here", "changeme", "change_me"}

MIN_SESSION_SECRET_LENGTH = 32
MIN_PASSWORD_LENGTH = 8
MIN_API_KEY_LENGTH = 20
# bcrypt ignores input past 72 bytes
MAX_PASSWORD_BYTES = 72
BCRYPT_ROUNDS = 10

_BCRYPT_ALPHABET = str.maketrans(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/",
    "./ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789",
)

DATASTORE_SCHEMES = ("postgresql", "postgres", "sqlite")

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)(?!-)[A-Za-z0-9-]{1,63}(?<!-)(\.(?!-)[A-Za-z0-9-]{1,63}(?<!-))*$"
)


@dataclass
class DatastoreConfig:
    """Datastore connection settings."""
    url: str
    password: str = field(default="", repr=False)
    port: int = 5432
    expose_port: bool = False

    @property
    def scheme(self) -> str:
        return urlparse(self.url).scheme

    @property
    def is_sqlite(self) -> bool:
        return self.scheme == "sqlite"

    @property
    def host(self) -> str:
        return urlparse(self.url).hostname or ""

    @property
    def user(self) -> str:
        return unquote(urlparse(self.url).username or "postgres")

    @property
    def database(self) -> str:
        return urlparse(self.url).path.lstrip("/")

    @property
    def sqlite_path(self) -> Path:
        # sqlite:///relative.db and sqlite:////absolute/path.db
        path = urlparse(self.url).path
        if path.startswith("//"):
            return Path(path[1:])
        return Path(path.lstrip("/"))

    @property
    def host_url(self) -> str:
        """
        URL the deployer itself connects to. The compose service name in
        DATABASE_URL only resolves inside the container network, so the
        host side goes through the loopback-published port.
        """
        parsed = urlparse(self.url)
        netloc = parsed.netloc.rsplit("@", 1)
        credentials = netloc[0] + "@" if len(netloc) == 2 else ""
        return parsed._replace(netloc=f"{credentials}127.0.0.1:{self.port}").geturl()

    @property
    def safe_url(self) -> str:
        """Connection string with the password masked."""
        parsed = urlparse(self.url)
        if parsed.password:
            return self.url.replace(f":{parsed.password}@", ":****@")
        return self.url


@dataclass
class HealthConfig:
    """Backoff tuning shared by every HealthGate in a run."""
    base_interval: float = 2.0
    max_interval: float = 30.0
    max_attempts: int = 30
    timeout: float = 300.0


@dataclass
class DeployConfig:
    """Validated configuration for one deployment host."""

    domain: str
    datastore: DatastoreConfig
    openai_api_key: str = field(repr=False)
    session_secret: str = field(repr=False)

    app_port: int = 5000
    proxy_http_port: int = 80
    proxy_https_port: int = 443

    cert_renewal_days: int = 30
    cert_validity_days: int = 365
    acme_email: str = ""
    acme_staging: bool = False

    health: HealthConfig = field(default_factory=HealthConfig)

    backup_retention_days: int = 30
    backup_before_deploy: bool = True

    deploy_dir: Path = field(default_factory=lambda: Path("/opt/helpboard"))
    compose_file: str = "docker-compose.prod.yml"
    max_parallel_starts: int = 4

    admin_password: Optional[str] = field(default=None, repr=False)
    agent_password: Optional[str] = field(default=None, repr=False)

    env_file: Optional[Path] = None

    def __post_init__(self):
        if not self.acme_email:
            self.acme_email = f"admin@{self.domain}"

    # Persisted layout

    @property
    def backup_dir(self) -> Path:
        return self.deploy_dir / "backups"

    @property
    def ssl_dir(self) -> Path:
        return self.deploy_dir / "ssl"

    @property
    def certbot_dir(self) -> Path:
        return self.deploy_dir / "certbot"

    @property
    def state_dir(self) -> Path:
        return self.deploy_dir / "state"

    @property
    def status_path(self) -> Path:
        return self.state_dir / "status.json"

    @property
    def migration_log_path(self) -> Path:
        return self.state_dir / "migrations.log"

    @property
    def compose_path(self) -> Path:
        return self.deploy_dir / self.compose_file

    @property
    def active_env_file(self) -> Path:
        return self.env_file or (self.deploy_dir / ".env")

    def setup_directories(self):
        """Create the persisted directory layout."""
        for d in (self.deploy_dir, self.backup_dir, self.state_dir, self.certbot_dir):
            d.mkdir(parents=True, exist_ok=True)
        self.ssl_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.ssl_dir, 0o700)

    def to_dict(self) -> Dict[str, Any]:
        """Operator-facing summary. Secrets are never included."""
        return {
            "domain": self.domain,
            "datastore": self.datastore.safe_url,
            "expose_datastore_port": self.datastore.expose_port,
            "app_port": self.app_port,
            "proxy_ports": [self.proxy_http_port, self.proxy_https_port],
            "cert_renewal_days": self.cert_renewal_days,
            "health": {
                "base_interval": self.health.base_interval,
                "max_interval": self.health.max_interval,
                "max_attempts": self.health.max_attempts,
                "timeout": self.health.timeout,
            },
            "backup_retention_days": self.backup_retention_days,
            "backup_before_deploy": self.backup_before_deploy,
            "deploy_dir": str(self.deploy_dir),
        }


# Optional keys: (parser, default). Parsers raise ValueError with a message.

def _int_range(low: int, high: int) -> Callable[[str], int]:
    def parse(value: str) -> int:
        try:
            number = int(value)
        except ValueError:
            raise ValueError(f"expected an integer, got {value!r}")
        if not low <= number <= high:
            raise ValueError(f"must be between {low} and {high}")
        return number
    return parse


def _float_range(low: float, high: float) -> Callable[[str], float]:
    def parse(value: str) -> float:
        try:
            number = float(value)
        except ValueError:
            raise ValueError(f"expected a number, got {value!r}")
        if not low <= number <= high:
            raise ValueError(f"must be between {low} and {high}")
        return number
    return parse


def _boolean(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


def _email(value: str) -> str:
    if "@" not in value or value.startswith("@") or value.endswith("@"):
        raise ValueError("not a valid email address")
    return value


def _password(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value.encode()) > MAX_PASSWORD_BYTES:
        raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes")
    return value


OPTIONAL_KEYS: Dict[str, Tuple[Callable[[str], Any], Any]] = {
    "APP_PORT": (_int_range(1, 65535), 5000),
    "PROXY_HTTP_PORT": (_int_range(1, 65535), 80),
    "PROXY_HTTPS_PORT": (_int_range(1, 65535), 443),
    "DATASTORE_PORT": (_int_range(1, 65535), 5432),
    "EXPOSE_DATASTORE_PORT": (_boolean, False),
    "CERT_RENEWAL_DAYS": (_int_range(1, 90), 30),
    "CERT_VALIDITY_DAYS": (_int_range(1, 3650), 365),
    "ACME_EMAIL": (_email, ""),
    "ACME_STAGING": (_boolean, False),
    "HEALTH_BASE_INTERVAL": (_float_range(0.0, 600.0), 2.0),
    "HEALTH_MAX_INTERVAL": (_float_range(0.0, 3600.0), 30.0),
    "HEALTH_MAX_ATTEMPTS": (_int_range(1, 1000), 30),
    "HEALTH_TIMEOUT": (_float_range(0.0, 86400.0), 300.0),
    "BACKUP_RETENTION_DAYS": (_int_range(1, 3650), 30),
    "BACKUP_BEFORE_DEPLOY": (_boolean, True),
    "DEPLOY_DIR": (Path, Path("/opt/helpboard")),
    "COMPOSE_FILE": (str, "docker-compose.prod.yml"),
    "MAX_PARALLEL_STARTS": (_int_range(1, 64), 4),
    "ADMIN_PASSWORD": (_password, None),
    "AGENT_PASSWORD": (_password, None),
}

KNOWN_KEYS = REQUIRED_KEYS + tuple(OPTIONAL_KEYS)


class EnvironmentValidator:
    """
    Gate that turns a raw key/value mapping into a DeployConfig.

    Every problem is collected before raising, so an operator sees all
    offending keys at once rather than fixing them one run at a time.
    """

    def validate(self, values: Mapping[str, Optional[str]]) -> DeployConfig:
        errors: Dict[str, str] = {}
        raw = {k: (v.strip() if isinstance(v, str) else v) for k, v in values.items()}

        for key in REQUIRED_KEYS:
            if not raw.get(key):
                errors[key] = "required but missing or empty"

        domain = raw.get("DOMAIN") or ""
        if domain and not _HOSTNAME_RE.match(domain):
            errors["DOMAIN"] = f"not a valid hostname: {domain!r}"

        url = raw.get("DATABASE_URL") or ""
        if url:
            problem = self._check_datastore_url(url)
            if problem:
                errors["DATABASE_URL"] = problem

        password = raw.get("PGPASSWORD") or ""
        if password and len(password) < MIN_PASSWORD_LENGTH:
            errors["PGPASSWORD"] = f"must be at least {MIN_PASSWORD_LENGTH} characters"

        api_key = raw.get("OPENAI_API_KEY") or ""
        if api_key:
            if api_key.lower() in PLACEHOLDER_VALUES:
                errors["OPENAI_API_KEY"] = "still set to the template placeholder"
            elif len(api_key) < MIN_API_KEY_LENGTH:
                errors["OPENAI_API_KEY"] = f"must be at least {MIN_API_KEY_LENGTH} characters"

        session_secret = raw.get("SESSION_SECRET") or ""
        if session_secret and len(session_secret) < MIN_SESSION_SECRET_LENGTH:
            errors["SESSION_SECRET"] = f"must be at least {MIN_SESSION_SECRET_LENGTH} characters"

        options: Dict[str, Any] = {}
        for key, (parser, default) in OPTIONAL_KEYS.items():
            value = raw.get(key)
            if value is None or value == "":
                options[key] = default
                continue
            try:
                options[key] = parser(value)
            except ValueError as e:
                errors[key] = str(e)

        if "HEALTH_BASE_INTERVAL" not in errors and "HEALTH_MAX_INTERVAL" not in errors:
            if options["HEALTH_MAX_INTERVAL"] < options["HEALTH_BASE_INTERVAL"]:
                errors["HEALTH_MAX_INTERVAL"] = "must not be smaller than HEALTH_BASE_INTERVAL"

        if not {"APP_PORT", "PROXY_HTTP_PORT", "PROXY_HTTPS_PORT"} & set(errors):
            ports = [options["APP_PORT"], options["PROXY_HTTP_PORT"], options["PROXY_HTTPS_PORT"]]
            if len(set(ports)) != len(ports):
                errors["APP_PORT"] = f"port conflict between application and proxy ports {ports}"

        if errors:
            logger.error(f"Configuration invalid: {', '.join(sorted(errors))}")
            raise ValidationError(errors)

        return DeployConfig(
            domain=domain,
            datastore=DatastoreConfig(
                url=url,
                password=password,
                port=options["DATASTORE_PORT"],
                expose_port=options["EXPOSE_DATASTORE_PORT"],
            ),
            openai_api_key=api_key,
            session_secret=session_secret,
            app_port=options["APP_PORT"],
            proxy_http_port=options["PROXY_HTTP_PORT"],
            proxy_https_port=options["PROXY_HTTPS_PORT"],
            cert_renewal_days=options["CERT_RENEWAL_DAYS"],
            cert_validity_days=options["CERT_VALIDITY_DAYS"],
            acme_email=options["ACME_EMAIL"],
            acme_staging=options["ACME_STAGING"],
            health=HealthConfig(
                base_interval=options["HEALTH_BASE_INTERVAL"],
                max_interval=options["HEALTH_MAX_INTERVAL"],
                max_attempts=options["HEALTH_MAX_ATTEMPTS"],
                timeout=options["HEALTH_TIMEOUT"],
            ),
            backup_retention_days=options["BACKUP_RETENTION_DAYS"],
            backup_before_deploy=options["BACKUP_BEFORE_DEPLOY"],
            deploy_dir=Path(options["DEPLOY_DIR"]),
            compose_file=options["COMPOSE_FILE"],
            max_parallel_starts=options["MAX_PARALLEL_STARTS"],
            admin_password=options["ADMIN_PASSWORD"],
            agent_password=options["AGENT_PASSWORD"],
        )

    @staticmethod
    def _check_datastore_url(url: str) -> Optional[str]:
        parsed = urlparse(url)
        if parsed.scheme not in DATASTORE_SCHEMES:
            return f"scheme must be one of {', '.join(DATASTORE_SCHEMES)}"
        if parsed.scheme == "sqlite":
            if not parsed.path.lstrip("/"):
                return "sqlite URL needs a file path"
            return None
        if not parsed.hostname:
            return "missing host"
        try:
            parsed.port
        except ValueError:
            return "invalid port"
        if not parsed.path.lstrip("/"):
            return "missing database name"
        return None


def load_environment(
    env_file: Optional[Path] = None,
    tuning_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Collect raw configuration values.

    Precedence (lowest first): YAML tuning file, .env file, process
    environment. Only known keys are taken from the process environment.
    """
    values: Dict[str, str] = {}

    if tuning_file and tuning_file.exists():
        with open(tuning_file) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValidationError({str(tuning_file): "tuning file must be a mapping"})
        for key, value in data.items():
            values[str(key).upper()] = "" if value is None else str(value)
        logger.info(f"Loaded tuning file: {tuning_file}")

    if env_file and env_file.exists():
        for key, value in dotenv_values(env_file).items():
            if value is not None:
                values[key] = value
        logger.info(f"Loaded environment file: {env_file}")

    source = os.environ if environ is None else environ
    for key in KNOWN_KEYS:
        if source.get(key):
            values[key] = source[key]

    return values


def generate_secret(length: int = 32, include_special: bool = False) -> str:
    """Generate a cryptographically secure random secret."""
    alphabet = string.ascii_letters + string.digits
    if include_special:
        alphabet += "!@#$%^&*"
    return ''.join(secrets.choice(alphabet) for _ in range(length))


def hash_password(password: str, salt_material: str, rounds: int = BCRYPT_ROUNDS) -> str:
    """
    Hash a credential with bcrypt, as the application verifies logins.

    The salt is derived from salt_material (session secret + natural key)
    so re-seeding the same credential yields the same stored value.
    """
    digest = hashlib.sha256(salt_material.encode()).digest()[:16]
    # bcrypt's base64 uses its own alphabet; 16 bytes encode to 22 characters
    encoded = base64.b64encode(digest).decode()[:22].translate(_BCRYPT_ALPHABET)
    salt = f"$2b${rounds:02d}${encoded}".encode()
    return bcrypt.hashpw(password.encode(), salt).decode()


def describe_errors(error: ValidationError) -> List[str]:
    """Human-readable lines for a validation failure."""
    return [f"{key}: {message}" for key, message in sorted(error.errors.items())]
