import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional, Sequence, Tuple

from app.models import ConversationTurn
from llm.client import TextGenerator
from llm.errors import IntentSynthesisError, SynthesizerTimeout, TextGenerationError
from llm.parsing import check_consistency, parse_model_output, validate_intent_payload
from llm.prompts import build_order_prompt
from llm.schemas import StructuredIntent, fallback_intent

logger = logging.getLogger(__name__)


class IntentSynthesizer:
    """
    One customer message in, one StructuredIntent out, via a single model call.

    synthesize() raises IntentSynthesisError subclasses; synthesize_safe()
    turns any of them into the fallback error intent.
    """

    def __init__(
        self,
        generator: TextGenerator,
        timeout_seconds: float = 10.0,
        temperature: float = 0.1,
        max_output_tokens: int = 2048,
        max_workers: int = 4,
    ) -> None:
        self._generator = generator
        self._timeout = timeout_seconds
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="intent-llm")

    def _generate(self, prompt: str) -> str:
        future = self._pool.submit(
            self._generator.generate,
            prompt,
            temperature=self._temperature,
            max_output_tokens=self._max_output_tokens,
        )
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise SynthesizerTimeout(f"Model call exceeded {self._timeout}s") from exc
        except IntentSynthesisError:
            raise
        except Exception as exc:
            raise TextGenerationError(repr(exc)) from exc

    def synthesize(
        self,
        sanitized_text: str,
        history: Sequence[ConversationTurn] = (),
        detected_order_ids: Sequence[str] = (),
    ) -> StructuredIntent:
        prompt = build_order_prompt(sanitized_text, history, detected_order_ids)
        raw = self._generate(prompt)
        strategy, payload = parse_model_output(raw)
        intent = validate_intent_payload(payload)
        check_consistency(intent, list(detected_order_ids))
        logger.debug("intent parsed via %s: %s", strategy, intent.action.value)
        return intent

    def synthesize_safe(
        self,
        sanitized_text: str,
        history: Sequence[ConversationTurn] = (),
        detected_order_ids: Sequence[str] = (),
    ) -> Tuple[StructuredIntent, Optional[str]]:
        """Returns (intent, error). error is None unless the fallback was used."""
        try:
            return self.synthesize(sanitized_text, history, detected_order_ids), None
        except IntentSynthesisError as exc:
            logger.warning("intent synthesis failed (%s): %s", type(exc).__name__, exc)
            return fallback_intent(), f"{type(exc).__name__}: {exc}"

    def close(self) -> None:
        self._pool.shutdown(wait=False)
