# chatbridge/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Security
    allowed_origins: list[str] = ["*"]
    metrics_token: str | None = None  # Bearer token for /metrics (endpoint disabled when unset)
    agents_api_key: str | None = None  # X-API-Key for /rocketchat/agents
    # SECURITY: Only set to true if behind a trusted reverse proxy (nginx, cloudflared, etc.)
    trust_proxy_headers: bool = False

    # Rocket.Chat (live-chat platform)
    rocketchat_base_url: str = "https://chat.intellectif.com"
    rocketchat_auth_token: str | None = None
    rocketchat_user_id: str | None = None
    rocketchat_reply_alias: str = "Virtual Assistant"  # Alias used for webhook-driven replies
    chat_bridge_reply_alias: str = "Intellectif Bot"  # Alias used by the direct /chat-bridge endpoint

    # Dialogflow CX (conversational agent)
    dialogflow_project_id: str | None = None
    dialogflow_location: str = "us-central1"
    dialogflow_agent_id: str | None = None
    dialogflow_client_email: str | None = None
    dialogflow_private_key: str | None = None  # PEM; escaped "\n" sequences are restored
    dialogflow_language_code: str = "en-US"
    dialogflow_timeout_seconds: float = 15.0

    # Bridge switches (both must be on for background replies)
    enable_rocketchat_dialogflow_bridge: bool = False
    enable_rocketchat_auto_response: bool = False

    # Bot-loop guard
    # Comma-separated lists
    bot_usernames: str = "dialogflow.bot,intellectif.bot,virtual-assistant"
    assistant_name_patterns: str = "virtual assistant,intellectif bot"

    # Deduplication cache
    dedup_cooldown_seconds: float = 2.0
    dedup_cache_ttl_seconds: float = 300.0  # 5 minutes
    dedup_sweep_interval_seconds: float = 60.0

    # Relay dispatcher (background worker pool)
    relay_workers: int = 4
    relay_queue_size: int = 100

    # Cloudflare Turnstile (chat protection)
    turnstile_chat_secret_key: str | None = None
    turnstile_verify_url: str = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
    turnstile_verify_timeout_seconds: float = 20.0

    # Direct chat bridge rate limiting
    chat_rate_limit_per_minute: int = 10
    chat_rate_limit_block_seconds: int = 300  # Block duration after exceeding the limit

    # Client-side chat session (proof-of-humanity token)
    chat_token_lifetime_seconds: float = 2 * 60 * 60  # 2 hours
    chat_refresh_interval_seconds: float = 30 * 60  # 30 minutes
    chat_max_refresh_retries: int = 3
    chat_min_token_length: int = 50
    chat_storage_key: str = "intellectif_chat_session"

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def bridge_active(self) -> bool:
        """Background NLU replies run only when both switches are on"""
        return self.enable_rocketchat_dialogflow_bridge and self.enable_rocketchat_auto_response

    @property
    def rocketchat_enabled(self) -> bool:
        """Check if Rocket.Chat service credentials are configured"""
        return bool(self.rocketchat_auth_token and self.rocketchat_user_id)

    @property
    def dialogflow_enabled(self) -> bool:
        """Check if Dialogflow CX service credentials are configured"""
        return bool(
            self.dialogflow_project_id
            and self.dialogflow_agent_id
            and self.dialogflow_client_email
            and self.dialogflow_private_key
        )

    @property
    def bot_username_set(self) -> frozenset[str]:
        return frozenset(u.strip() for u in self.bot_usernames.split(",") if u.strip())

    @property
    def assistant_pattern_list(self) -> tuple[str, ...]:
        return tuple(p.strip().lower() for p in self.assistant_name_patterns.split(",") if p.strip())

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("turnstile_chat_secret_key", self.turnstile_chat_secret_key),
        ]

        # The relay needs both sides only when it is switched on
        if self.bridge_active:
            required_fields.extend([
                ("rocketchat_auth_token", self.rocketchat_auth_token),
                ("rocketchat_user_id", self.rocketchat_user_id),
                ("dialogflow_project_id", self.dialogflow_project_id),
                ("dialogflow_agent_id", self.dialogflow_agent_id),
                ("dialogflow_client_email", self.dialogflow_client_email),
                ("dialogflow_private_key", self.dialogflow_private_key),
            ])

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Security ---
    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.trust_proxy_headers:
        warnings.append(
            "trust_proxy_headers=True: ensure you are behind a trusted reverse proxy, "
            "otherwise X-Forwarded-For spoofing is possible."
        )

    # --- Bridge configuration ---
    if s.enable_rocketchat_dialogflow_bridge != s.enable_rocketchat_auto_response:
        warnings.append(
            "Only one of enable_rocketchat_dialogflow_bridge / enable_rocketchat_auto_response is on: "
            "webhook events will be acknowledged but no replies will be sent."
        )
    if s.bridge_active and not s.rocketchat_enabled:
        warnings.append("bridge is active but rocketchat_auth_token / rocketchat_user_id are missing.")
    if s.bridge_active and not s.dialogflow_enabled:
        warnings.append("bridge is active but Dialogflow CX credentials are incomplete.")

    # --- Dedup ---
    if s.dedup_cache_ttl_seconds < s.dedup_cooldown_seconds:
        warnings.append("dedup_cache_ttl_seconds is shorter than dedup_cooldown_seconds (dedup is ineffective).")

    # --- Chat protection ---
    if not s.turnstile_chat_secret_key:
        warnings.append("turnstile_chat_secret_key is not set (chat verification will fail).")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
