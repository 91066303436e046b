"""Bridge configuration - reads from environment variables.

Every setting is an upper-case class attribute with an environment default.
Instances can override any of them by keyword, which is how tests and the
reconfiguration path build alternative configurations:

    config = Config(TYPE="sd-webui", ENDPOINT="http://127.0.0.1:7860")
"""

import json
import logging
import os
from typing import Dict, Optional, Union

from .capabilities import DEFAULT_BASE_PROMPT, UC_PRESET, get_backend

logger = logging.getLogger(__name__)


def _env(name: str, default=None):
    return os.getenv(f"NAI_{name}", default)


def _env_flag(name: str, default: bool) -> bool:
    return str(_env(name, str(default))).strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    return int(_env(name, default))


def _env_float(name: str, default: float) -> float:
    return float(_env(name, default))


def _env_authority(name: str, default: Union[bool, int]) -> Union[bool, int]:
    raw = _env(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    if raw in ("true", "false"):
        return raw == "true"
    return int(raw)


def _env_headers(name: str) -> Dict[str, str]:
    raw = _env(name)
    if not raw:
        return {}
    headers = json.loads(raw)
    if not isinstance(headers, dict):
        raise ValueError(f"NAI_{name} must be a JSON object")
    return {str(k): str(v) for k, v in headers.items()}


class Config:
    """Bridge configuration"""
    HOST = os.getenv("BRIDGE_HOST", "0.0.0.0")
    PORT = int(os.getenv("BRIDGE_PORT", 7861))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Backend
    TYPE = _env("TYPE", "token")
    TOKEN: Optional[str] = _env("TOKEN")
    EMAIL: Optional[str] = _env("EMAIL")
    PASSWORD: Optional[str] = _env("PASSWORD")
    API_ENDPOINT = _env("API_ENDPOINT", "https://api.novelai.net")
    ENDPOINT: Optional[str] = _env("ENDPOINT")
    HEADERS: Dict[str, str] = _env_headers("HEADERS")

    # Permission: bool, or the minimum caller authority allowed to spend Anlas
    ALLOW_ANLAS: Union[bool, int] = _env_authority("ALLOW_ANLAS", True)

    # Parameters
    MODEL: Optional[str] = _env("MODEL")
    SAMPLER: Optional[str] = _env("SAMPLER")
    SCHEDULER: Optional[str] = _env("SCHEDULER")
    SMEA = _env_flag("SMEA", False)
    SMEA_DYN = _env_flag("SMEA_DYN", False)
    RESCALE = _env_float("RESCALE", 0)
    DECRISPER = _env_flag("DECRISPER", False)
    RESTORE_FACES = _env_flag("RESTORE_FACES", False)
    HIRES_FIX = _env_flag("HIRES_FIX", False)
    HIRES_FIX_UPSCALER = _env("HIRES_FIX_UPSCALER", "Latent")
    UPSCALER = _env("UPSCALER", "Lanczos")
    SCALE = _env_float("SCALE", 11)
    TEXT_STEPS = _env_int("TEXT_STEPS", 28)
    IMAGE_STEPS = _env_int("IMAGE_STEPS", 50)
    MAX_STEPS = _env_int("MAX_STEPS", 64)
    STRENGTH = _env_float("STRENGTH", 0.7)
    NOISE = _env_float("NOISE", 0.2)
    RESOLUTION = _env("RESOLUTION", "portrait")
    MAX_RESOLUTION = _env_int("MAX_RESOLUTION", 1920)

    # Prompt
    BASE_PROMPT = _env("BASE_PROMPT", DEFAULT_BASE_PROMPT)
    NEGATIVE_PROMPT = _env("NEGATIVE_PROMPT", UC_PRESET)
    FORBIDDEN = _env("FORBIDDEN", "")
    DEFAULT_PROMPT_SW = _env_flag("DEFAULT_PROMPT_SW", False)
    DEFAULT_PROMPT = _env("DEFAULT_PROMPT", "")
    PLACEMENT = _env("PLACEMENT", "after")
    LATIN_ONLY = _env_flag("LATIN_ONLY", False)
    LOWER_CASE = _env_flag("LOWER_CASE", True)
    MAX_WORDS = _env_int("MAX_WORDS", 0)

    # Advanced (seconds)
    MAX_RETRY_COUNT = _env_int("MAX_RETRY_COUNT", 3)
    REQUEST_TIMEOUT = _env_float("REQUEST_TIMEOUT", 60)
    MAX_CONCURRENCY = _env_int("MAX_CONCURRENCY", 0)
    POLL_INTERVAL = _env_float("POLL_INTERVAL", 1)
    POLL_TIMEOUT = _env_float("POLL_TIMEOUT", 600)

    # Stable Horde
    NSFW = _env("NSFW", "allow")
    TRUSTED_WORKERS = _env_flag("TRUSTED_WORKERS", False)

    # ComfyUI (API-format graphs; bundled templates when unset)
    WORKFLOW_TEXT2IMAGE: Optional[str] = _env("WORKFLOW_TEXT2IMAGE")
    WORKFLOW_IMAGE2IMAGE: Optional[str] = _env("WORKFLOW_IMAGE2IMAGE")

    # sd-webui
    ENABLE_UPSCALE = _env_flag("ENABLE_UPSCALE", True)
    DTG_ENABLED = _env_flag("DTG_ENABLED", False)
    DTG_DISABLE_AFTER_LEN = _env_int("DTG_DISABLE_AFTER_LEN", 100)
    DTG_TAG_LENGTH = _env("DTG_TAG_LENGTH", "short")
    DTG_BAN_TAGS = _env("DTG_BAN_TAGS", "")
    DTG_PROMPT_FORMAT = _env(
        "DTG_PROMPT_FORMAT",
        "<|special|>, <|characters|>,<|artist|>, <|general|>, <|meta|>, <|rating|>",
    )
    DTG_SEED = _env_int("DTG_SEED", -1)
    DTG_TIMING = _env("DTG_TIMING", "After")
    DTG_MODEL = _env("DTG_MODEL", "KBlueLeaf/DanTagGen-delta-rev2")
    DTG_USE_CPU = _env_flag("DTG_USE_CPU", False)
    DTG_NO_FORMATTING = _env_flag("DTG_NO_FORMATTING", False)
    DTG_TEMPERATURE = _env_float("DTG_TEMPERATURE", 1)
    DTG_TOP_P = _env_float("DTG_TOP_P", 0.8)
    DTG_TOP_K = _env_int("DTG_TOP_K", 80)

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not key.isupper() or not hasattr(type(self), key):
                raise AttributeError(f"Unknown config key: {key}")
            setattr(self, key, value)
        get_backend(self.TYPE)

    @property
    def backend(self):
        return get_backend(self.TYPE)

    @property
    def third_party(self) -> bool:
        return not self.backend.paid

    @property
    def endpoint(self) -> str:
        endpoint = self.ENDPOINT or self.backend.default_endpoint
        if not endpoint:
            raise ValueError(f"NAI_ENDPOINT is required for backend type {self.TYPE}")
        return endpoint.rstrip("/")

    @property
    def model(self) -> Optional[str]:
        if self.MODEL:
            return self.MODEL
        return "nai-v3" if self.backend.paid else None

    @property
    def sampler(self) -> str:
        return self.SAMPLER or self.backend.default_sampler

    @property
    def scheduler(self) -> Optional[str]:
        return self.SCHEDULER or self.backend.default_scheduler

    def snapshot(self, *keys: str) -> tuple:
        return tuple(getattr(self, key) for key in keys)

    def print_config(self):
        logger.info("=" * 80)
        logger.info("NOVELAI BRIDGE CONFIGURATION")
        logger.info("=" * 80)
        logger.info(f"Port: {self.PORT}")
        logger.info(f"Backend: {self.TYPE} ({'paid' if self.backend.paid else 'third-party'})")
        logger.info(f"  Endpoint: {self.ENDPOINT or self.backend.default_endpoint or '✗ NOT CONFIGURED'}")
        logger.info(f"  Token: {'✓ Set' if self.TOKEN else '✗ Not set'}")
        logger.info(f"  Model: {self.model}, Sampler: {self.sampler}, Scheduler: {self.scheduler}")
        logger.info("")
        logger.info("LIMITS:")
        logger.info(f"  Max steps: {self.MAX_STEPS}, Max resolution: {self.MAX_RESOLUTION}")
        logger.info(f"  Max words: {self.MAX_WORDS or 'unlimited'}, Max concurrency: {self.MAX_CONCURRENCY or 'unlimited'}")
        logger.info(f"  Retries: {self.MAX_RETRY_COUNT}, Request timeout: {self.REQUEST_TIMEOUT}s")
        logger.info("=" * 80)
