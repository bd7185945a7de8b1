import asyncio
import re
import requests
import logging
logger = logging.getLogger(__name__)

from glove_errors import BadRequest, ServiceUnavailable, SummarizationFailed, TranslationFailed
from glove_journal import IN

CHAT_PATH = "/v1/chat/completions"
# Separate connect/read timeouts
DEFAULT_TIMEOUT = (10, 90)

LANGUAGE_NAMES = {
    "ar": "Arabic",
    "bn": "Bengali",
    "de": "German",
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "hi": "Hindi",
    "it": "Italian",
    "ja": "Japanese",
    "ko": "Korean",
    "mr": "Marathi",
    "nl": "Dutch",
    "pl": "Polish",
    "pt": "Portuguese",
    "ru": "Russian",
    "ta": "Tamil",
    "te": "Telugu",
    "tr": "Turkish",
    "uk": "Ukrainian",
    "ur": "Urdu",
    "zh": "Chinese",
}

ANALYSIS_PROMPT = (
    "You are an expert assistant for a 'Neuro Glove' device.\n"
    "Analyze the following session log. Provide a concise summary, identify patterns or issues, "
    "and offer suggestions. Format your response clearly using markdown.\n"
    "Session Log:\n---\n{log}\n---\nYour Analysis:"
)

_THINK_RE = re.compile(r"(?is)<think>.*?</think>")


def normalize_endpoint(endpoint):
    endpoint = (endpoint or "").strip()
    if endpoint and "/v1/" not in endpoint:
        endpoint = endpoint.rstrip("/") + CHAT_PATH
    if endpoint and "://" not in endpoint:
        endpoint = "http://" + endpoint
    return endpoint


def language_name(code):
    return LANGUAGE_NAMES.get((code or "").lower().split("-")[0], code)


class ChatCompletionsClient:
    """Blocking client for an OpenAI-compatible chat completions endpoint."""

    def __init__(self, endpoint, model, api_key=None, timeout=DEFAULT_TIMEOUT):
        self.endpoint = normalize_endpoint(endpoint)
        self.model = (model or "").strip()
        self.api_key = api_key
        self.timeout = timeout

    def complete(self, prompt, temperature=0.3):
        if not self.endpoint or not self.model:
            raise ServiceUnavailable("AI endpoint or model not configured")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "stream": False,
        }
        try:
            resp = requests.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise ServiceUnavailable(f"AI backend timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ServiceUnavailable(f"cannot reach AI backend: {e}") from e
        if resp.status_code >= 500:
            raise ServiceUnavailable(f"HTTP {resp.status_code}: {resp.text[:400]}")
        if resp.status_code >= 400:
            raise BadRequest(f"HTTP {resp.status_code}: {resp.text[:400]}")
        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise BadRequest(f"unexpected AI response: {resp.text[:400]}") from e
        return _THINK_RE.sub("", content or "").strip()


class TranslationCache:
    """Write-once memo keyed by (text, target language)."""

    def __init__(self):
        self._items = {}

    def get(self, text, lang):
        return self._items.get((text, lang))

    def put(self, text, lang, translation):
        self._items.setdefault((text, lang), translation)

    def __len__(self):
        return len(self._items)


class Translator:
    def __init__(self, client, source_lang="en", cache=None):
        self.client = client
        self.source_lang = source_lang
        self.cache = cache if cache is not None else TranslationCache()

    async def translate(self, text, lang):
        if not lang or lang == self.source_lang:
            return text
        hit = self.cache.get(text, lang)
        if hit is not None:
            return hit
        prompt = (
            f"Translate this {language_name(self.source_lang)} text to {language_name(lang)} "
            f'and return only the translation: "{text}"'
        )
        try:
            translation = await asyncio.to_thread(self.client.complete, prompt)
        except (ServiceUnavailable, BadRequest) as e:
            logger.warning("translation to %s failed: %s", lang, e)
            raise TranslationFailed.wrap(e) from e
        self.cache.put(text, lang, translation)
        return translation


def format_entries(entries):
    lines = []
    for entry in entries:
        arrow = "<--" if entry.direction == IN else "-->"
        lines.append(f"{entry.timestamp.astimezone().strftime('%H:%M:%S')} {arrow} {entry.text}")
    return "\n".join(lines)


class Summarizer:
    def __init__(self, client):
        self.client = client

    async def summarize(self, entries):
        entries = list(entries)
        if not entries:
            return "No log entries to analyze."
        prompt = ANALYSIS_PROMPT.format(log=format_entries(entries))
        try:
            return await asyncio.to_thread(self.client.complete, prompt, 0.7)
        except (ServiceUnavailable, BadRequest) as e:
            logger.error("log analysis failed: %s", e)
            raise SummarizationFailed.wrap(e) from e
