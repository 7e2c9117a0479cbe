from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias="REDIS_URL")
    app_env: str = Field(default="prod", validation_alias="APP_ENV")

    assist_provider: str = Field(default="ollama", validation_alias="ASSIST_PROVIDER")
    assist_hostname: str = Field(default="localhost", validation_alias="ASSIST_HOSTNAME")
    assist_port: int | None = Field(default=11434, validation_alias="ASSIST_PORT")
    assist_path: str = Field(default="/v1/chat/completions", validation_alias="ASSIST_PATH")
    assist_protocol: str = Field(default="http", validation_alias="ASSIST_PROTOCOL")
    assist_api_key: str | None = Field(default=None, validation_alias="ASSIST_API_KEY")
    assist_model: str | None = Field(default=None, validation_alias="ASSIST_MODEL")
    assist_keep_alive: str | None = Field(default="5m", validation_alias="ASSIST_KEEP_ALIVE")
    assist_temperature: float = Field(default=0.2, validation_alias="ASSIST_TEMPERATURE")
    assist_num_predict_chat: int = Field(default=512, validation_alias="ASSIST_NUM_PREDICT_CHAT")
    assist_chunk_timeout_s: float = Field(default=60.0, validation_alias="ASSIST_CHUNK_TIMEOUT_S")
    assist_rerank_threshold: float = Field(default=0.47, validation_alias="ASSIST_RERANK_THRESHOLD")

    assist_template_dir: str | None = Field(default=None, validation_alias="ASSIST_TEMPLATE_DIR")
    assist_workspace_name: str | None = Field(default=None, validation_alias="ASSIST_WORKSPACE_NAME")
    assist_trace_dir: str | None = Field(default=None, validation_alias="ASSIST_TRACE_DIR")
    assist_session_context_ttl_sec: int = Field(
        default=86400, validation_alias="ASSIST_SESSION_CONTEXT_TTL_SEC"
    )
    assist_debug: bool = Field(default=False, validation_alias="ASSIST_DEBUG")

settings = Settings()
