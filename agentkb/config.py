from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
import logging
import re

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)


def is_valid_uuid(value) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value.strip()))


class Settings(BaseSettings):
    # App
    app_name: str = "AgentKB Provisioning Service"
    debug: bool = False
    api_prefix: str = "/api"
    log_level: str = "INFO"
    log_json: bool = False

    # ── Remote AI platform (DigitalOcean GenAI) ──────────────
    do_api_token: str = ""  # Set via DO_API_TOKEN env var
    do_api_base_url: str = "https://api.digitalocean.com"
    do_region: str = "tor1"
    do_request_timeout: float = 30.0
    do_model_id: Optional[str] = None  # Falls back to an existing agent, then the model list
    do_project_id: Optional[str] = None  # Falls back to the default project
    do_database_id: Optional[str] = None  # Falls back to an existing KB
    do_embedding_model_id: Optional[str] = None
    do_embedding_model_name: Optional[str] = None  # Resolved against the KB model list
    preferred_model_name: str = "openai-gpt-oss-120b"

    # ── Versioned document store (CouchDB / Cloudant) ────────
    couchdb_url: str = "http://localhost:5984"
    couchdb_username: str = "admin"
    couchdb_password: str = ""
    couchdb_timeout: float = 15.0
    users_db: str = "maia_users"

    # ── Object storage (Spaces / MinIO) ──────────────────────
    storage_backend: str = "spaces"  # "spaces" | "minio"
    storage_endpoint_url: str = "https://tor1.digitaloceanspaces.com"
    storage_access_key_id: str = ""
    storage_secret_access_key: str = ""
    storage_bucket: str = "maia"  # Bare name or bucket URL
    storage_region: str = "us-east-1"
    storage_force_path_style: bool = False

    # ── Agent defaults ───────────────────────────────────────
    agent_instruction: str = ""
    agent_instruction_file: Optional[str] = None  # Text file with the instruction block
    agent_max_tokens: int = 16384
    agent_temperature: float = 0.0
    agent_top_p: float = 1.0
    agent_k: int = 10

    # ── Caches & conflict retry ──────────────────────────────
    reconcile_cache_ttl: float = 30.0
    resource_cache_ttl: float = 30.0
    conflict_max_attempts: int = 3
    conflict_base_delay: float = 0.15

    # ── Provisioning timings ─────────────────────────────────
    deployment_poll_interval: float = 30.0
    deployment_poll_attempts: int = 50
    # The platform reports spurious early failures; failures seen inside this
    # window are rechecked once after waiting the same amount of time.
    deployment_early_failure_window: float = 120.0
    endpoint_poll_interval: float = 30.0
    endpoint_poll_attempts: int = 20
    editor_token_ttl_days: int = 7

    # ── Indexing ─────────────────────────────────────────────
    indexing_poll_interval: float = 15.0
    indexing_max_duration: float = 60 * 60.0
    move_verify_retries: int = 3
    move_verify_delay: float = 0.1
    ephemeral_indexing_enabled: bool = False
    ephemeral_bucket_prefix: str = "kb-ephemeral"

    # ── Status registry ──────────────────────────────────────
    status_retention_seconds: float = 3600.0
    status_sweep_interval_seconds: int = 300
    resume_indexing_on_startup: bool = True

    @property
    def bucket_name(self) -> str:
        """Bucket name, accepting either a bare name or a Spaces bucket URL."""
        raw = (self.storage_bucket or "").strip()
        if "//" in raw:
            host = raw.split("//", 1)[1]
            return host.split(".", 1)[0] or "maia"
        return raw or "maia"

    @property
    def path_style(self) -> bool:
        return self.storage_force_path_style or self.storage_backend.lower() == "minio"

    @property
    def indexing_max_polls(self) -> int:
        return max(1, int(self.indexing_max_duration // max(self.indexing_poll_interval, 0.001)))

    def resolved_model_id(self) -> Optional[str]:
        return self.do_model_id.strip() if is_valid_uuid(self.do_model_id) else None

    def resolved_project_id(self) -> Optional[str]:
        return self.do_project_id.strip() if is_valid_uuid(self.do_project_id) else None

    def resolved_database_id(self) -> Optional[str]:
        return self.do_database_id.strip() if is_valid_uuid(self.do_database_id) else None

    def load_instruction(self) -> str:
        """Instruction text for new agents; the file wins over the inline value."""
        if self.agent_instruction_file:
            try:
                with open(self.agent_instruction_file, "r", encoding="utf-8") as fh:
                    return fh.read().strip()
            except OSError as e:
                logger.warning("Unable to read agent instruction file %s: %s", self.agent_instruction_file, e)
        return self.agent_instruction

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
