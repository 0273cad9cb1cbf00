import json
import logging
import re
import subprocess
from typing import Optional, Protocol

import google.generativeai as genai

from app.config import Settings
from llm.errors import TextGenerationError
from llm.schemas import ActionKind
from policies.diagnosis import detect_intent, detect_product_search

logger = logging.getLogger(__name__)

SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]


class TextGenerator(Protocol):
    def generate(self, prompt: str, *, temperature: float, max_output_tokens: int) -> str:
        ...


# ---------------------------
# Gemini
# ---------------------------
class GeminiTextGenerator:
    """Thin wrapper around the Gemini SDK with deterministic-leaning settings."""

    def __init__(self, api_key: str, model_name: str, timeout_seconds: float = 30.0) -> None:
        if not api_key:
            raise ValueError("GEMINI_API_KEY is required when LLM_MODE=gemini")
        genai.configure(api_key=api_key)
        self._model = genai.GenerativeModel(model_name)
        self._timeout = timeout_seconds

    def generate(self, prompt: str, *, temperature: float = 0.1, max_output_tokens: int = 2048) -> str:
        try:
            response = self._model.generate_content(
                prompt,
                generation_config={
                    "temperature": temperature,
                    "top_k": 1,
                    "top_p": 0.8,
                    "max_output_tokens": max_output_tokens,
                },
                safety_settings=SAFETY_SETTINGS,
                # bounds the HTTP call itself, not just the caller's wait
                request_options={"timeout": self._timeout},
            )
            text: Optional[str] = getattr(response, "text", None)
        except Exception as exc:
            raise TextGenerationError(f"Gemini call failed: {exc}") from exc

        if not text or not text.strip():
            raise TextGenerationError("Gemini returned an empty response")
        return text.strip()


# ---------------------------
# Local model via Ollama
# ---------------------------
class OllamaTextGenerator:
    def __init__(self, model_name: str, timeout_seconds: float = 30.0) -> None:
        self._model = model_name
        self._timeout = timeout_seconds

    def generate(self, prompt: str, *, temperature: float = 0.1, max_output_tokens: int = 2048) -> str:
        # the ollama CLI has no per-call sampling flags; the prompt carries the format
        try:
            proc = subprocess.run(
                ["ollama", "run", self._model],
                input=prompt.encode("utf-8"),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise TextGenerationError(f"ollama call failed: {exc!r}") from exc

        out = proc.stdout.decode("utf-8", errors="ignore").strip()
        if proc.returncode != 0 or not out:
            err = proc.stderr.decode("utf-8", errors="ignore").strip()
            raise TextGenerationError(f"ollama exited with {proc.returncode}: {err[:200]}")
        return out


# ---------------------------
# Stub (rule-based, offline)
# ---------------------------
_CURRENT_MESSAGE = re.compile(r'^CURRENT USER MESSAGE: "(.*)"$', re.MULTILINE | re.DOTALL)
_DETECTED_IDS = re.compile(r"^DETECTED ORDER IDs: (.+)$", re.MULTILINE)

_STUB_REPLIES = {
    ActionKind.ORDER_CANCELLATION: "I'll help you cancel order {order_id}. Let me check whether it can still be cancelled.",
    ActionKind.CONFIRM_CANCELLATION: "Cancelling that order for you now.",
    ActionKind.CANCEL_ABORT: "No problem, your order stays active.",
    ActionKind.CANCEL_ORDERS: "Here are the orders that can still be cancelled.",
    ActionKind.STATUS_CHECK: "Let me check the current status of {target} for you.",
    ActionKind.LIST_ORDERS: "Here are your orders so you can pick one.",
    ActionKind.REFUND_STATUS: "Let me check the refund status for your orders.",
    ActionKind.TRACK_ORDER: "I'll show you tracking information for your orders.",
    ActionKind.TRACK_SPECIFIC_ORDER: "Here are the tracking details for order {order_id}.",
    ActionKind.GENERAL_INQUIRY: "I can help with order status, tracking, refunds and cancellations.",
}


class StubTextGenerator:
    """
    Rule-based stand-in for a model: reads the customer message back out of
    the prompt and answers in the same JSON shape a real model would.
    """

    def generate(self, prompt: str, *, temperature: float = 0.0, max_output_tokens: int = 2048) -> str:
        m = _CURRENT_MESSAGE.search(prompt or "")
        message = m.group(1) if m else ""
        ids_match = _DETECTED_IDS.search(prompt or "")
        order_ids = [i.strip() for i in ids_match.group(1).split(",")] if ids_match else []
        order_id = order_ids[0] if order_ids else None

        action = detect_intent(message)
        product_name = None

        if action == ActionKind.STATUS_CHECK and not order_id:
            product = detect_product_search(message)
            if product:
                product_name = product.product_name
            else:
                action = ActionKind.LIST_ORDERS
        if action in {ActionKind.ORDER_CANCELLATION, ActionKind.TRACK_SPECIFIC_ORDER} and not order_id:
            action = ActionKind.CLARIFICATION_NEEDED

        if action == ActionKind.CLARIFICATION_NEEDED:
            reply = "Could you tell me which order you mean? An order ID like ORD-2024-001 helps."
        else:
            reply = _STUB_REPLIES[action].format(order_id=order_id, target=order_id or product_name)

        payload = {
            "action": action.value,
            "orderId": order_id,
            "productName": product_name,
            "confidence": 0.9 if action != ActionKind.GENERAL_INQUIRY else 0.6,
            "message": reply,
            "requiresConfirmation": action == ActionKind.ORDER_CANCELLATION,
        }
        return json.dumps(payload)


def build_text_generator(settings: Settings) -> TextGenerator:
    """
    LLM_MODE:
      - gemini: Google Gemini API
      - local: Ollama CLI
      - stub: rule-based, no network
    """
    mode = settings.llm_mode
    if mode == "gemini":
        return GeminiTextGenerator(
            settings.gemini_api_key, settings.gemini_model, timeout_seconds=settings.llm_timeout_seconds
        )
    if mode == "local":
        return OllamaTextGenerator(settings.ollama_model, timeout_seconds=settings.llm_timeout_seconds)
    if mode != "stub":
        logger.warning("unknown LLM_MODE %r, using stub", mode)
    return StubTextGenerator()
