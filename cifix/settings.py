from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CIFIX_", extra="ignore")

    # GitHub: used for cloning private repos and for polling GitHub Actions.
    # Without a token a run stops with CONFIGURATION_ERROR (CI results cannot be observed).
    github_token: str | None = None
    github_api_base: str = "https://api.github.com"

    # OpenAI-compatible chat completions API (patch synthesis).
    # Optional: when unset only the heuristic fixers run.
    llm_api_key: str | None = None
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-5-mini"
    llm_max_tokens: int = 2048
    llm_timeout_s: float = 60.0
    # Upper bound on how much of the target file is embedded in the prompt.
    llm_max_file_chars: int = 20_000

    # Service
    host: str = "0.0.0.0"
    port: int = 3000
    retry_limit_default: int = 5

    # Storage
    runs_dir: str = "var/runs"
    results_dir: str = "var/results"
    audit_log_path: str = "var/audit/cifix_audit.jsonl"

    # Test execution. Set sandbox_enabled=false to always run on the host.
    sandbox_enabled: bool = True
    docker_bin: str = "docker"
    sandbox_timeout_s: float = 900.0
    # git / lint-fix / dependency-install commands
    tool_timeout_s: float = 300.0

    # GitHub Actions polling
    ci_poll_interval_s: float = 10.0
    ci_poll_timeout_s: float = 300.0

    # Commit identity for fix commits (fresh clones usually have no user configured).
    git_author_name: str = "cifix-agent"
    git_author_email: str = "cifix-agent@users.noreply.github.com"

    max_issues_per_classification: int = 30
    max_issue_history: int = 100

    # SSE comment sent on idle job streams so proxies keep the connection open.
    stream_keepalive_s: float = 15.0
