# src/vulnscan_core/config.py
"""
Engine configuration.

Settings are built once at startup and handed to the queue, executor and
adapters. Values come from an optional YAML file, then environment overrides.
"""
import os
from typing import Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, Field


class ToolSettings(BaseModel):
    nmap_path: str = Field("nmap", description="nmap executable")
    nikto_path: str = Field("nikto", description="nikto executable")
    sqlmap_path: str = Field("sqlmap", description="sqlmap executable")
    zap_path: str = Field("zap.sh", description="OWASP ZAP launcher")
    nmap_timeout: float = Field(300, gt=0, description="Seconds before nmap is killed")
    nikto_timeout: float = Field(600, gt=0, description="Seconds before nikto is killed")
    sqlmap_timeout: float = Field(900, gt=0, description="Seconds before sqlmap is killed")
    temp_dir: Optional[str] = Field(None, description="Directory for tool output files")


class QueueSettings(BaseModel):
    concurrency: int = Field(3, ge=1, description="Worker threads")
    attempts: int = Field(3, ge=1, description="Attempts per job before it is failed")
    backoff_base: float = Field(2.0, ge=0, description="Seconds before the first retry, doubled each retry")
    keep_completed: int = Field(10, ge=0)
    keep_failed: int = Field(5, ge=0)
    poll_interval: float = Field(1.0, gt=0)
    stall_timeout: float = Field(3600, gt=0, description="Seconds without heartbeat before an active job is stalled")


class EngineSettings(BaseModel):
    database_url: str = "sqlite:///./vulnscan.db"
    fallback_mode: Literal["permissive", "strict"] = "permissive"
    classification_workers: int = Field(1, ge=1)
    log_level: str = "INFO"
    reconcile_interval: float = Field(300, ge=0, description="Seconds between sweeps, 0 disables the scheduler")
    stuck_scan_timeout: float = Field(3600, gt=0)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)

    @property
    def permissive(self) -> bool:
        return self.fallback_mode == "permissive"


# env var -> (section, key)
ENV_OVERRIDES = {
    "DATABASE_URL": (None, "database_url"),
    "SCAN_FALLBACK_MODE": (None, "fallback_mode"),
    "LOG_LEVEL": (None, "log_level"),
    "NMAP_PATH": ("tools", "nmap_path"),
    "NIKTO_PATH": ("tools", "nikto_path"),
    "SQLMAP_PATH": ("tools", "sqlmap_path"),
    "ZAP_PATH": ("tools", "zap_path"),
    "SCAN_CONCURRENCY": ("queue", "concurrency"),
}


def load_settings(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> EngineSettings:
    """
    Build EngineSettings from a YAML file and environment overrides.

    The file path defaults to $VULNSCAN_CONFIG. A missing file is an error
    only when a path was given explicitly.
    """
    env = os.environ if env is None else env
    explicit = path is not None
    path = path or env.get("VULNSCAN_CONFIG")

    data: dict = {}
    if path and (explicit or os.path.exists(path)):
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        if section is None:
            data[key] = value
        else:
            data.setdefault(section, {})[key] = value

    return EngineSettings.model_validate(data)
