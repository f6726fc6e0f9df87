"""Kaliun Connect Server Configuration."""

import secrets
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Server
    server_name: str = "Kaliun Connect"
    host: str = "0.0.0.0"
    port: int = 7331
    debug: bool = False
    base_url: str = "http://localhost:7331"
    log_level: str = "INFO"

    # Paths
    data_dir: Path = Path.home() / "kaliun" / "data"

    # Database (database_url wins over db_path when set)
    db_path: Path = Path.home() / "kaliun" / "data" / "kaliun.db"
    database_url: str = ""

    # JWT
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    # Human sessions
    auth_mode: str = "auto"  # 'auto' | 'local' | 'idp'
    session_lifetime_days: int = 30
    idp_url: str = ""
    idp_anon_key: str = ""
    idp_service_key: str = ""
    idp_timeout_seconds: float = 10.0

    # Installations
    online_window_seconds: int = 600  # 10 minutes
    pangolin_default_endpoint: str = "https://app.pangolin.net"

    model_config = {"env_prefix": "KALIUN_"}

    @property
    def sqlalchemy_url(self) -> str:
        return self.database_url or f"sqlite:///{self.db_path}"

    @property
    def resolved_auth_mode(self) -> str:
        """Pick the identity backend once for the whole process."""
        if self.auth_mode in ("local", "idp"):
            return self.auth_mode
        if not self.idp_url or "localhost" in self.base_url:
            return "local"
        return "idp"

    def ensure_dirs(self) -> None:
        """Create all required directories."""
        for d in [self.data_dir, self.db_path.parent]:
            d.mkdir(parents=True, exist_ok=True)

    def ensure_secrets(self) -> None:
        """Generate the signing secret if not set, persist it so tokens survive restarts."""
        secrets_file = self.data_dir / ".secrets"
        saved = {}
        if secrets_file.exists():
            for line in secrets_file.read_text().strip().splitlines():
                if "=" in line:
                    k, v = line.split("=", 1)
                    saved[k.strip()] = v.strip()

        if not self.jwt_secret:
            self.jwt_secret = saved.get("jwt_secret", "") or secrets.token_urlsafe(32)

        # Rotating this value invalidates every outstanding token
        secrets_file.write_text(f"jwt_secret={self.jwt_secret}\n")


settings = Settings()
settings.ensure_dirs()
settings.ensure_secrets()
