"""
AWS Lambda transport used by the invoke step.

boto3 is blocking, so each invocation runs on a worker thread and the
event loop stays free for the other virtual users.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from engine_errors import InvocationError

logger = logging.getLogger("LambdaEngine.client")

# Retries would skew latency numbers; a failed invocation is reported as-is.
_CLIENT_CONFIG = Config(retries={"total_max_attempts": 1, "mode": "standard"})


class LambdaClient:
    """Thin async wrapper around a boto3 Lambda client."""

    def __init__(self, region: str = "us-east-1", endpoint_url: Optional[str] = None, *, client: Any = None):
        self.region = region
        if client is None:
            # Sessions are not thread-safe; each client gets its own.
            session = boto3.session.Session()
            client = session.client(
                service_name="lambda",
                region_name=region,
                endpoint_url=endpoint_url,
                config=_CLIENT_CONFIG,
            )
        self._client = client
        logger.debug(f"Lambda client created: region={region}, endpoint={self.endpoint_url}")

    @property
    def endpoint_url(self) -> str:
        return self._client.meta.endpoint_url

    def _invoke_sync(self, params: Dict[str, Any]) -> Dict[str, Any]:
        response = self._client.invoke(**params)
        payload_stream = response.get("Payload")
        payload = payload_stream.read() if payload_stream is not None else b""
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8", errors="replace")
        return {
            "statusCode": response.get("StatusCode", 0),
            "payload": payload,
            "functionError": response.get("FunctionError"),
            "logResult": response.get("LogResult"),
        }

    async def invoke(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Invoke the function described by `params` (boto3 Invoke keyword arguments).

        Returns {"statusCode", "payload", "functionError", "logResult"}.
        Raises InvocationError on any transport or service error.
        """
        function_name = params.get("FunctionName", "")
        try:
            return await asyncio.to_thread(self._invoke_sync, params)
        except ClientError as e:
            error = e.response.get("Error", {})
            raise InvocationError(function_name, f"{error.get('Code', 'Unknown')}: {error.get('Message', e)}") from e
        except BotoCoreError as e:
            raise InvocationError(function_name, str(e)) from e
