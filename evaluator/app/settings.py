from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CODECOACH_", extra="ignore")

    # Logging
    log_level: str = "INFO"

    # Paths
    workspace_root: str = "/tmp/codecoach-workspaces"

    # Toolchain
    compiler_path: str = "g++"
    compiler_args: tuple[str, ...] = ("-std=c++17", "-O2", "-pipe")
    source_filename: str = "solution.cpp"
    artifact_filename: str = "solution"
    compile_timeout_ms: int = 20000
    max_diagnostics_bytes: int = 65536

    # Sandbox
    sandbox_executor: Literal["local", "docker"] = "local"
    sandbox_image: str = "debian:bookworm-slim"
    docker_api_timeout_seconds: int = 120
    # Host-side spawns (the compiler, and submissions under the local executor)
    # run inside bubblewrap namespaces. "none" is for trusted development only.
    local_isolation: Literal["bwrap", "none"] = "bwrap"
    bwrap_path: str = "bwrap"
    sandbox_ro_paths: tuple[str, ...] = ()

    # Resource limits (server clamps user input to these)
    default_time_limit_ms: int = 2000
    max_time_limit_ms: int = 10000
    default_memory_mb: int = 256
    max_memory_mb: int = 1024
    max_output_bytes: int = 1_048_576  # 1MB
    pids_limit: int = 64
    cpus: float = 1.0

    # Whole request budget (compile + all tests)
    request_deadline_ms: int = 60000

    # Concurrency
    max_concurrent_evaluations: int = 4

    # Request size
    max_test_cases: int = 100
    max_code_bytes: int = 256 * 1024

    def ensure_dirs(self) -> None:
        Path(self.workspace_root).mkdir(parents=True, exist_ok=True)


SETTINGS = Settings()
