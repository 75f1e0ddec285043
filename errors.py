# errors.py
from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base error; every failure the gateway reports to a caller is one of these."""

    status: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class InvalidRequest(GatewayError):
    status = 400
    code = "invalid_request"


class ConfigIncomplete(GatewayError):
    status = 400
    code = "model_missing"


class ProviderUnsupported(GatewayError):
    status = 400
    code = "provider_unsupported"


class KeyMissing(GatewayError):
    status = 400
    code = "key_missing"


class UpstreamTransportError(GatewayError):
    status = 502
    code = "openrouter_error"


class UpstreamHTTPError(GatewayError):
    status = 502
    code = "openrouter_error"

    def __init__(self, upstream_status: int, body: str):
        self.upstream_status = upstream_status
        self.body = body
        super().__init__(f"OpenRouter error ({upstream_status}): {body}")


class UnsupportedMemoryType(GatewayError):
    status = 400
    code = "memory_store_failed"

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__("Unsupported memory type.")


class StorageError(GatewayError):
    status = 500
    code = "storage_error"
