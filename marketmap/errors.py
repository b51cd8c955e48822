class UpstreamError(RuntimeError):
    """Unrecoverable failure talking to the text-generation endpoint."""


class DeadlineExceeded(UpstreamError):
    def __init__(self, message: str = "Gemini timeout before completion") -> None:
        super().__init__(message)


class InvalidOutputError(UpstreamError):
    pass


class MissingApiKeyError(UpstreamError):
    def __init__(self) -> None:
        super().__init__("Missing GEMINI_API_KEY")
