import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        fx_quote_url: str,
        fx_timeout_secs: float,
        llm_api_key: str,
        llm_api_url: str,
        llm_model: str,
        llm_timeout_secs: float,
        vapid_public_key: str,
        vapid_private_key: str,
        vapid_subject: str,
        email_provider: str,
        email_from: str,
        resend_api_key: str,
        brevo_api_key: str,
        email_timeout_secs: float,
        alert_dedup_hours: int,
        max_insights: int,
        max_model_lines: int,
        classifier_batch_limit: int,
        automation_workers: int,
        automation_hour: int,
        automation_minute: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.fx_quote_url = fx_quote_url
        self.fx_timeout_secs = fx_timeout_secs
        self.llm_api_key = llm_api_key
        self.llm_api_url = llm_api_url
        self.llm_model = llm_model
        self.llm_timeout_secs = llm_timeout_secs
        self.vapid_public_key = vapid_public_key
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.email_provider = email_provider
        self.email_from = email_from
        self.resend_api_key = resend_api_key
        self.brevo_api_key = brevo_api_key
        self.email_timeout_secs = email_timeout_secs
        self.alert_dedup_hours = alert_dedup_hours
        self.max_insights = max_insights
        self.max_model_lines = max_model_lines
        self.classifier_batch_limit = classifier_batch_limit
        self.automation_workers = automation_workers
        self.automation_hour = automation_hour
        self.automation_minute = automation_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINSIGHT_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finsight.db"
    return Settings(
        database_url=os.getenv("FINSIGHT_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("FINSIGHT_TIMEZONE", "America/Sao_Paulo"),
        fx_quote_url=os.getenv(
            "FINSIGHT_FX_QUOTE_URL",
            "https://economia.awesomeapi.com.br/json/last/USD-BRL",
        ),
        fx_timeout_secs=float(os.getenv("FINSIGHT_FX_TIMEOUT_SECS", "5")),
        llm_api_key=os.getenv("FINSIGHT_LLM_API_KEY", ""),
        llm_api_url=os.getenv(
            "FINSIGHT_LLM_API_URL", "https://api.openai.com/v1/chat/completions"
        ),
        llm_model=os.getenv("FINSIGHT_LLM_MODEL", "gpt-4o-mini"),
        llm_timeout_secs=float(os.getenv("FINSIGHT_LLM_TIMEOUT_SECS", "12")),
        vapid_public_key=os.getenv("FINSIGHT_VAPID_PUBLIC_KEY", ""),
        vapid_private_key=os.getenv("FINSIGHT_VAPID_PRIVATE_KEY", ""),
        vapid_subject=os.getenv("FINSIGHT_VAPID_SUBJECT", "mailto:alerts@finsight.local"),
        email_provider=os.getenv("FINSIGHT_EMAIL_PROVIDER", "resend").strip().lower(),
        email_from=os.getenv("FINSIGHT_EMAIL_FROM", "Finsight <alerts@finsight.local>"),
        resend_api_key=os.getenv("FINSIGHT_RESEND_API_KEY", ""),
        brevo_api_key=os.getenv("FINSIGHT_BREVO_API_KEY", ""),
        email_timeout_secs=float(os.getenv("FINSIGHT_EMAIL_TIMEOUT_SECS", "8")),
        alert_dedup_hours=int(os.getenv("FINSIGHT_ALERT_DEDUP_HOURS", "18")),
        max_insights=int(os.getenv("FINSIGHT_MAX_INSIGHTS", "6")),
        max_model_lines=int(os.getenv("FINSIGHT_MAX_MODEL_LINES", "3")),
        classifier_batch_limit=int(os.getenv("FINSIGHT_CLASSIFIER_BATCH_LIMIT", "100")),
        automation_workers=int(os.getenv("FINSIGHT_AUTOMATION_WORKERS", "4")),
        automation_hour=int(os.getenv("FINSIGHT_AUTOMATION_HOUR", "6")),
        automation_minute=int(os.getenv("FINSIGHT_AUTOMATION_MINUTE", "30")),
    )
