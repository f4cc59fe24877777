from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    supabase_url: str
    supabase_service_role_key: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60
    oauth_state_expiration_seconds: int = 900
    ghl_client_id: str | None = None
    ghl_client_secret: str | None = None
    ghl_auth_url: str = "https://marketplace.gohighlevel.com/oauth/chooselocation"
    ghl_token_url: str = "https://services.leadconnectorhq.com/oauth/token"
    ghl_api_base_url: str = "https://services.leadconnectorhq.com"
    ghl_scopes: str = "contacts.readonly contacts.write"
    ghl_redirect_uri: str = "http://localhost:8000/api/integrations/auth/ghl/callback"
    ghl_webhook_secret: str | None = None
    webhook_signing_key: str = "webhook-secret-key"
    provider_timeout_seconds: float = 10.0
    outbound_webhook_timeout_seconds: float = 10.0
    email_status_policy: str = "overwrite"  # overwrite | monotonic
    ui_integrations_path: str = "/settings/integrations"
    operator_user_ids: list[str] = []

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
