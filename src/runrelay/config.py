from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Pipeline host (GitLab CI variables are read directly)
    api_url: str = Field(
        default="https://gitlab.com/api/v4",
        validation_alias=AliasChoices("CI_API_V4_URL", "API_URL"),
    )
    project_id: str = Field(default="", validation_alias=AliasChoices("CI_PROJECT_ID", "PROJECT_ID"))
    pipeline_id: str = Field(default="", validation_alias=AliasChoices("CI_PIPELINE_ID", "PIPELINE_ID"))
    pipeline_url: str = Field(default="", validation_alias=AliasChoices("CI_PIPELINE_URL", "PIPELINE_URL"))
    job_token: str = Field(default="", validation_alias=AliasChoices("CI_JOB_TOKEN", "JOB_TOKEN"))
    token_header: str = "JOB-TOKEN"

    # Bus -- only the publisher is given this credential
    bus_token: str = ""  # Falls back to the job token when empty
    bus_token_header: str = ""  # Falls back to token_header when empty

    # Resilient client
    max_retries: int = 5
    retry_delay: float = 2.0
    http_timeout: float = 60.0

    # Node completion polling
    poll_interval: float = 10.0
    node_timeout: float = 3600.0

    # Bundling
    work_dir: str = "./work"
    hash_algorithm: str = "sha256"
    bundle_prefix: str = "bundle"
    run_id: str = ""  # Generated at kickoff when empty

    # Server / logging
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    json_logs: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    def effective_bus_token(self) -> str:
        return self.bus_token or self.job_token

    def effective_bus_token_header(self) -> str:
        return self.bus_token_header or self.token_header


settings = Settings()
