class IntentSynthesisError(Exception):
    """Base class for everything that can go wrong turning text into an intent."""


class TextGenerationError(IntentSynthesisError):
    """The text-generation backend failed or returned nothing usable."""


class SynthesizerTimeout(IntentSynthesisError):
    """The text-generation call exceeded its deadline."""


class IntentParseError(IntentSynthesisError):
    """No parse strategy produced a JSON object from the model output."""


class IntentValidationError(IntentSynthesisError):
    """The parsed object is not a well-formed, consistent intent."""


class PromptRejected(IntentSynthesisError):
    """The message still looked hostile after prompt-level sanitizing."""
