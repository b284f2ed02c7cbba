"""Provider/runtime configuration for image generation and chat helpers.

Architectural role:
    Centralizes backend endpoints, model defaults and credential lookup for
    `canvasrefine.image`, `canvasrefine.llm` and the artifact/chain stores.

Resolution:
    Values are read from the process environment at import time after
    `load_dotenv()`. API keys are resolved lazily through `load_key`, which
    prefers an environment override and falls back to a key file.

Determinism:
    Deterministic for a fixed process environment and key files.

Failure behavior:
    Missing key material is represented as `None`; adapters translate it into
    `AuthRequired` failures when a backend needs a key.
"""

import os
from dotenv import load_dotenv

from canvasrefine.core.models import ProviderOptions

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Image model routing controls.
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "dall-e-3")
IMAGE_SIZE = os.getenv("IMAGE_SIZE", "1024x1024")
IMAGE_STYLE = os.getenv("IMAGE_STYLE") or None
IMAGE_QUALITY = os.getenv("IMAGE_QUALITY") or None
STABLE_DIFFUSION_PROVIDER = os.getenv("STABLE_DIFFUSION_PROVIDER", "local").strip().lower()
STABLE_DIFFUSION_HOST = os.getenv("STABLE_DIFFUSION_HOST") or None
UPLOAD_PREVIOUS_IMAGE = _env_bool("UPLOAD_PREVIOUS_IMAGE", False)
DESCRIBE_REFERENCE_IMAGE = _env_bool("DESCRIBE_REFERENCE_IMAGE", True)

# DALL-E rejects prompts above 4000 characters.
IMAGE_PROMPT_LIMIT = int(os.getenv("IMAGE_PROMPT_LIMIT", "4000"))

# Transport and polling.
IMAGE_HTTP_TIMEOUT_SECONDS = float(os.getenv("IMAGE_HTTP_TIMEOUT_SECONDS", "120"))
IMAGE_POLL_INTERVAL_SECONDS = float(os.getenv("IMAGE_POLL_INTERVAL_SECONDS", "2.0"))
IMAGE_POLL_MAX_ATTEMPTS = int(os.getenv("IMAGE_POLL_MAX_ATTEMPTS", "30"))

# Persistence.
ARTIFACT_DIR = os.getenv("ARTIFACT_DIR", "artifacts")
CHAIN_STORE_PATH = os.getenv("CHAIN_STORE_PATH") or None

# Chat models used for description and enrichment.
VISION_MODEL = os.getenv("VISION_MODEL", "gpt-4o")
VISION_MAX_TOKENS = 1500
ENHANCER_MODEL = os.getenv("ENHANCER_MODEL", "gpt-4o")
ENHANCER_TEMPERATURE = 0.7

AI_HORDE_MODEL = os.getenv("AI_HORDE_MODEL", "Anything v5")


# Image endpoint map keyed by backend name.
IMAGE_PROVIDERS = {

    "openai": {
        "url": "https://api.openai.com/v1/images/generations",
        "chat_url": "https://api.openai.com/v1/chat/completions",
        "key_file": "config/openai.key"
    },

    "local": {
        "url": "http://localhost:7860/sdapi/v1/txt2img",
        "key_file": None
    },

    "stablediffusionapi": {
        "url": "https://stablediffusionapi.com/api/v3/text2img",
        "key_file": "config/stablediffusionapi.key"
    },

    "replicate": {
        "url": "https://api.replicate.com/v1/predictions",
        "version": "db21e45d3f7023abc2a46ee38a23973f6dce16bb082a930b0c49861f96d1e5bf",
        "key_file": "config/replicate.key"
    },

    "ai_horde": {
        "url": "https://aihorde.net/api/v2/generate/async",
        "status_url": "https://aihorde.net/api/v2/generate/status/",
        "key_file": "config/ai_horde.key"
    },

    "custom": {
        "url": None,
        "key_file": "config/custom_sd.key"
    }

}

# Shared Stable Diffusion defaults.
SD_STEPS = 30
SD_GUIDANCE_SCALE = 7.5
SD_SAMPLER = "DPM++ 2M Karras"


def load_key(path):
    """Load API key from environment override or key file.

    Resolution order:
        1. Environment variable inferred from file stem (for example
           `config/openai.key` -> `OPENAI_API_KEY`).
        2. Raw file contents at `path`.

    Args:
        path: Configured key file path or `None`.

    Returns:
        Key string or `None` when not available.

    Edge cases:
        - `None` path returns `None`.
        - Missing or empty file returns `None`.
    """
    if not path:
        return None
    key_name = os.path.splitext(os.path.basename(path))[0].upper() + "_API_KEY"
    env_value = os.getenv(key_name)
    if env_value:
        return env_value
    if not os.path.exists(path):
        return None
    with open(path, "r") as f:
        return f.read().strip() or None


def provider_key(provider: str):
    """Resolve the key configured for one entry of `IMAGE_PROVIDERS`."""
    config = IMAGE_PROVIDERS.get(provider) or {}
    return load_key(config.get("key_file"))


def default_options() -> ProviderOptions:
    """Build `ProviderOptions` from environment configuration.

    Keys are resolved here so request handlers never touch key files.
    """
    return ProviderOptions(
        model=IMAGE_MODEL,
        sd_provider=STABLE_DIFFUSION_PROVIDER,
        api_key=provider_key("openai"),
        sd_host=STABLE_DIFFUSION_HOST,
        sd_api_key=provider_key(STABLE_DIFFUSION_PROVIDER),
        style=IMAGE_STYLE,
        quality=IMAGE_QUALITY,
        upload_previous_image=UPLOAD_PREVIOUS_IMAGE,
        prompt_limit=IMAGE_PROMPT_LIMIT,
    )
