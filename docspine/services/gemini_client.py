"""Gemini API client initialization.

Uses the google-genai SDK (not google.generativeai).
"""

from google import genai

from docspine.config import get_settings


def get_gemini_client() -> genai.Client:
    """Initialize and return a Gemini API client.

    The API key comes from the application settings. Settings accept a
    missing GEMINI_API_KEY so runs without the gatekeeper need no key; it is
    required here.

    Returns:
        genai.Client: Client ready for ``client.models.generate_content`` calls.

    Raises:
        ValueError: If GEMINI_API_KEY is not set.
    """
    settings = get_settings()

    if not settings.gemini_api_key:
        raise ValueError(
            "GEMINI_API_KEY not set in environment. "
            "Please set this variable in your .env file or environment."
        )

    return genai.Client(api_key=settings.gemini_api_key)
