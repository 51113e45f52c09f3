"""
Shared behaviour of nodes backed by external services (ai-*, automation-*)
"""
import base64
import binascii
from typing import Any

from ..errors import ExternalFailure, ExternalRejected
from ..node_base import BaseNode, ExecutionContext
from ...services import ServiceError


class ExternalServiceNode(BaseNode):
    """
    Base class for executors that call the injected services handle

    Transient ServiceErrors are retried by the context's RetryPolicy; the final
    error is classified as ExternalFailure (transient) or ExternalRejected.
    """

    async def call_with_retry(
        self,
        context: ExecutionContext,
        method_name: str,
        *args: Any,
        deadline_timeout: bool = False
    ) -> Any:
        """
        Call an adapter method under the context's retry policy

        Args:
            context: Execution context of this run
            method_name: ServicesProtocol method to call
            *args: Positional arguments for the method
            deadline_timeout: Pass the time left before the deadline as `timeout`
                              (methods that accept one, such as http_post)
        """
        async def attempt():
            if deadline_timeout and context.deadline is not None:
                return await context.call_service(method_name, *args, timeout=context.remaining())
            return await context.call_service(method_name, *args)

        try:
            return await context.retry_policy.call(
                attempt,
                deadline=context.deadline,
                on_attempt=context.record_attempt,
                label=f"{self.node_id} ({self.node_type})"
            )
        except ServiceError as e:
            if e.transient:
                raise ExternalFailure(
                    f"{method_name} failed after {len(context.attempts)} attempt(s): {e.message}"
                ) from e
            raise ExternalRejected(f"{method_name} rejected: {e.message}") from e


def as_bytes(value: Any) -> bytes:
    """File port values arrive as bytes, or as base64 text when they came through JSON"""
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("file input is neither bytes nor base64 text")
    raise ValueError(f"file input has unsupported type {type(value).__name__}")
