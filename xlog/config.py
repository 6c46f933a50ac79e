from dynaconf import Dynaconf, Validator

settings = Dynaconf(
    settings_files=["settings.toml", ".secrets.toml"],
    environments=True,
    env_switcher="ENV_FOR_DYNACONF",
    envvar_prefix="XLOG",
    load_dotenv=True,
    validators=[
        Validator("DOMAIN", must_exist=True),
        Validator("DATABASE_URL", must_exist=True),
        Validator("DELIVERY_MAX_ATTEMPTS", gte=1, default=5),
        Validator("DELIVERY_BACKOFF_BASE_MS", gte=1, default=1000),
        Validator("DELIVERY_BACKOFF_CAP_MS", gte=1, default=3_600_000),
        Validator("RETRY_INTERVAL_SECONDS", gt=0, default=60),
        Validator("QUEUE_POP_TIMEOUT_SECONDS", gt=0, default=5),
        Validator("QUEUE_VISIBILITY_TIMEOUT_SECONDS", gt=0, default=300),
        Validator("REPLAY_TTL_SECONDS", gt=0, default=900),
        Validator("SIGNATURE_MAX_SKEW_SECONDS", gt=0, default=300),
        Validator("SETTINGS_CACHE_TTL_SECONDS", gte=0, default=60),
        Validator("HTTP_TIMEOUT", gt=0, default=10),
        Validator("RUN_WORKERS", is_type_of=bool, default=True),
    ],
)
