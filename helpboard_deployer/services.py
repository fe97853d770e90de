"""
Service management for the HelpBoard stack.

Handles:
- docker compose file and nginx.conf generation
- Service lifecycle (start, stop, proxy reload) through docker compose
- Container status lookup
- Command construction for in-container probes and dumps
"""

import subprocess
import logging
from typing import Dict, List, Any
from enum import Enum

import yaml

from .config import DeployConfig

logger = logging.getLogger(__name__)


DATASTORE_SERVICE = "db"
CACHE_SERVICE = "redis"
APP_SERVICE = "app"
PROXY_SERVICE = "nginx"


class ServiceStatus(Enum):
    """Container status states."""
    RUNNING = "running"
    STOPPED = "stopped"
    STARTING = "starting"
    STOPPING = "stopping"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ServiceManager:
    """
    Drives the container runtime for each service.

    The runtime itself is opaque: every operation is a docker compose
    invocation against the generated compose file.
    """

    def __init__(self, config: DeployConfig):
        self.config = config

    def ensure_docker(self):
        """Verify Docker is available and running."""
        try:
            subprocess.run(
                ["docker", "info"],
                capture_output=True,
                check=True
            )
        except (subprocess.CalledProcessError, FileNotFoundError):
            raise RuntimeError("Docker is not running or not installed")

    def compose_command(self, *args: str) -> List[str]:
        cmd = ["docker", "compose", "-f", str(self.config.compose_path)]
        if self.config.active_env_file.exists():
            cmd += ["--env-file", str(self.config.active_env_file)]
        return cmd + list(args)

    def _run_compose(self, *args) -> subprocess.CompletedProcess:
        """Run a docker compose command."""
        return subprocess.run(self.compose_command(*args), capture_output=True, text=True)

    def exec_command(self, service_name: str, command: List[str]) -> List[str]:
        """Command line that runs `command` inside a service container."""
        return self.compose_command("exec", "-T", service_name, *command)

    def start(self, service_name: str) -> bool:
        """Start a specific service."""
        result = self._run_compose("up", "-d", service_name)
        if result.returncode == 0:
            logger.info(f"Started service: {service_name}")
            return True
        logger.error(f"Failed to start {service_name}: {result.stderr}")
        return False

    def stop(self, service_name: str) -> bool:
        """Stop a specific service."""
        result = self._run_compose("stop", service_name)
        if result.returncode == 0:
            logger.info(f"Stopped service: {service_name}")
            return True
        logger.error(f"Failed to stop {service_name}: {result.stderr}")
        return False

    def reload_proxy(self) -> bool:
        """Make a running nginx pick up replaced certificate material."""
        result = self._run_compose("exec", "-T", PROXY_SERVICE, "nginx", "-s", "reload")
        if result.returncode == 0:
            logger.info("Reloaded proxy configuration")
            return True
        logger.warning(f"Proxy reload failed: {result.stderr}")
        return False

    def get_status(self, service_name: str) -> ServiceStatus:
        """Get the container status of a service."""
        result = self._run_compose("ps", "--format", "{{.State}}", service_name)
        if result.returncode != 0:
            return ServiceStatus.UNKNOWN

        status_map = {
            "running": ServiceStatus.RUNNING,
            "exited": ServiceStatus.STOPPED,
            "created": ServiceStatus.STOPPED,
            "restarting": ServiceStatus.STARTING,
            "removing": ServiceStatus.STOPPING,
        }
        return status_map.get(result.stdout.strip(), ServiceStatus.UNKNOWN)

    # Generated configuration

    def generate_docker_compose(self) -> str:
        """Generate the compose file for db, redis, app and nginx."""
        cfg = self.config
        user = cfg.datastore.user
        database = cfg.datastore.database or "helpboard"

        db: Dict[str, Any] = {
            "image": "postgres:15-alpine",
            "restart": "always",
            "environment": {
                "POSTGRES_DB": database,
                "POSTGRES_USER": user,
                "POSTGRES_PASSWORD": "${PGPASSWORD}",
                "POSTGRES_INITDB_ARGS": "--auth-host=scram-sha-256 --auth-local=scram-sha-256",
            },
            "volumes": ["postgres_data:/var/lib/postgresql/data"],
            "networks": ["helpboard_network"],
            "healthcheck": {
                "test": ["CMD-SHELL", f"pg_isready -U {user} -d {database}"],
                "interval": "10s",
                "timeout": "5s",
                "retries": 5,
            },
        }
        # Loopback only unless the operator opts in to external exposure
        if cfg.datastore.expose_port:
            db["ports"] = [f"{cfg.datastore.port}:5432"]
        else:
            db["ports"] = [f"127.0.0.1:{cfg.datastore.port}:5432"]

        compose = {
            "name": "helpboard",
            "services": {
                DATASTORE_SERVICE: db,
                CACHE_SERVICE: {
                    "image": "redis:7-alpine",
                    "restart": "always",
                    "command": "redis-server --appendonly yes",
                    "volumes": ["redis_data:/data"],
                    "networks": ["helpboard_network"],
                },
                APP_SERVICE: {
                    "build": {"context": ".", "dockerfile": "Dockerfile"},
                    "restart": "always",
                    "env_file": [str(cfg.active_env_file)],
                    "environment": {
                        "NODE_ENV": "production",
                        "PORT": "5000",
                        "REDIS_URL": "redis://redis:6379",
                        "CORS_ORIGIN": f"https://{cfg.domain}",
                        "TRUST_PROXY": "true",
                    },
                    "ports": [f"127.0.0.1:{cfg.app_port}:5000"],
                    "depends_on": [DATASTORE_SERVICE, CACHE_SERVICE],
                    "networks": ["helpboard_network"],
                },
                PROXY_SERVICE: {
                    "image": "nginx:alpine",
                    "restart": "always",
                    "ports": [f"{cfg.proxy_http_port}:80", f"{cfg.proxy_https_port}:443"],
                    "volumes": [
                        "./nginx.conf:/etc/nginx/nginx.conf:ro",
                        f"{cfg.ssl_dir}:/etc/nginx/ssl:ro",
                        f"{cfg.certbot_dir / 'www'}:/var/www/certbot:ro",
                    ],
                    "depends_on": [APP_SERVICE],
                    "networks": ["helpboard_network"],
                },
            },
            "volumes": {"postgres_data": {}, "redis_data": {}},
            "networks": {"helpboard_network": {"driver": "bridge"}},
        }
        return yaml.dump(compose, default_flow_style=False, sort_keys=False)

    def generate_nginx_conf(self) -> str:
        """Generate nginx.conf terminating TLS in front of the app."""
        domain = self.config.domain
        lines = [
            "events { worker_connections 1024; }",
            "",
            "http {",
            "    upstream helpboard_app { server app:5000; }",
            "",
            "    server {",
            "        listen 80;",
            f"        server_name {domain};",
            "        location /.well-known/acme-challenge/ { root /var/www/certbot; }",
            "        location /health { return 200 'ok'; }",
            "        location / { return 301 https://$host$request_uri; }",
            "    }",
            "",
            "    server {",
            "        listen 443 ssl;",
            f"        server_name {domain};",
            "        ssl_certificate /etc/nginx/ssl/current/fullchain.pem;",
            "        ssl_certificate_key /etc/nginx/ssl/current/privkey.pem;",
            "        ssl_protocols TLSv1.2 TLSv1.3;",
            "",
            "        location / {",
            "            proxy_pass http://helpboard_app;",
            "            proxy_http_version 1.1;",
            "            proxy_set_header Upgrade $http_upgrade;",
            "            proxy_set_header Connection \"upgrade\";",
            "            proxy_set_header Host $host;",
            "            proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
            "            proxy_set_header X-Forwarded-Proto $scheme;",
            "        }",
            "    }",
            "}",
            "",
        ]
        return "\n".join(lines)

    def write_compose(self):
        """Write the compose file to the deploy directory."""
        path = self.config.compose_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            f.write(self.generate_docker_compose())
        logger.info(f"Written: {path}")

    def write_nginx_conf(self):
        """Write nginx.conf to the deploy directory."""
        path = self.config.deploy_dir / "nginx.conf"
        with open(path, "w") as f:
            f.write(self.generate_nginx_conf())
        logger.info(f"Written: {path}")
