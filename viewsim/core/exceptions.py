class ViewSimError(Exception):
    """Base exception for viewsim."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ProviderError(ViewSimError):
    """The LLM provider could not produce a response stream."""

    def __init__(
        self,
        message: str,
        model: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.model = model
        self.status_code = status_code
        super().__init__(message)


class ProviderHTTPError(ProviderError):
    def __init__(self, model: str, status_code: int, reason: str, body: str) -> None:
        super().__init__(
            message=f"OpenRouter request failed for model \"{model}\": {status_code} {reason} - {body}",
            model=model,
            status_code=status_code,
        )
        self.body = body


class UnsupportedModalityError(ProviderError):
    def __init__(self, model: str, provider_message: str) -> None:
        super().__init__(
            message=(
                f"OpenRouter model \"{model}\" does not support image input.\n"
                f"OpenRouter error: {provider_message}"
            ),
            model=model,
            status_code=404,
        )


class SimulationTimeoutError(ViewSimError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(message=f"Simulation exceeded its {timeout_seconds}s deadline")
        self.timeout_seconds = timeout_seconds
