"""Shared constants for the Venesa assistant.

Nothing here imports from agent/ or tools/, so every module can depend on
it.
"""

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
GEMINI_API_KEY_ENV = "GEMINI_API_KEY"
DEFAULT_MODEL = "gemini-2.5-flash"

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"
ELEVENLABS_API_KEY_ENV = "ELEVENLABS_API_KEY"

# Service name -> env var prefix. GEMINI_API_KEY, GEMINI_API_KEY_1, ... all count.
KEY_POOL_SERVICES = {
    "gemini": GEMINI_API_KEY_ENV,
    "elevenlabs": ELEVENLABS_API_KEY_ENV,
}

RATE_LIMIT_COOLDOWN_SECONDS = 60.0
