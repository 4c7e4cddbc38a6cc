from pydantic import Field
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    app_name: str = Field("fleet-procurement-approvals", alias="APP_NAME")
    app_env: str = Field("dev", alias="APP_ENV")

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Escalation windows (hours)
    default_escalation_hours: float = Field(24.0, alias="DEFAULT_ESCALATION_HOURS")
    urgent_escalation_hours: float = Field(2.0, alias="URGENT_ESCALATION_HOURS")
    emergency_escalation_hours: float = Field(1.0, alias="EMERGENCY_ESCALATION_HOURS")

    # Amount bands used when no workflow rule matches
    auto_approve_limit: float = Field(500.0, alias="AUTO_APPROVE_LIMIT")
    superintendent_limit: float = Field(5000.0, alias="SUPERINTENDENT_LIMIT")
    procurement_manager_limit: float = Field(25000.0, alias="PROCUREMENT_MANAGER_LIMIT")

    # Storage
    approvals_db_path: str = Field("approvals.db", alias="APPROVALS_DB_PATH")

    # Azure Service Bus (empty connection string = events disabled)
    service_bus_connection_string: str | None = Field(default=None, alias="SERVICE_BUS_CONNECTION_STRING")
    service_bus_queue_name: str = Field("procurement-events", alias="SERVICE_BUS_QUEUE_NAME")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

settings = Settings()
