"""
Pipeline error taxonomy

Recovered locally (never reach the caller of parse_batch):
- SoftParseFailure and its subclasses → low-confidence fallback candidate
- CacheUnavailableError → treated as a cache miss / skipped write
- UsageStoreError → budget check fails open

Propagated to the caller:
- DataStoreFailure → item/transaction stores unreachable

Budget denials and ambiguous merges are data, not exceptions.
"""


class PipelineError(Exception):
    """Base class for ingestion/prediction pipeline errors"""
    pass


class SoftParseFailure(PipelineError):
    """A tier-3 resolution failed; the line degrades to a fallback candidate"""
    pass


class StructuredGenerationError(SoftParseFailure):
    """The language model returned malformed output or the transport failed"""

    def __init__(
        self,
        message: str,
        raw_response: str = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ):
        super().__init__(message)
        self.raw_response = raw_response
        # Tokens already spent when the provider answered but the output was unusable
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens


class QuotaExceededError(StructuredGenerationError):
    """The language model provider rejected the call with a quota/rate error"""

    def __init__(self, message: str, retry_after_seconds: int = 3600):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class GeneratorNotConfiguredError(StructuredGenerationError):
    """No API key / client available for structured generation"""
    pass


class CacheUnavailableError(PipelineError):
    """Durable cache layer could not be read or written"""
    pass


class UsageStoreError(PipelineError):
    """Usage records could not be read or written"""
    pass


class DataStoreFailure(PipelineError):
    """Item or transaction store unreachable; never masked by the pipeline"""
    pass
