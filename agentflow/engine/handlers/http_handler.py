# agentflow/engine/handlers/http_handler.py

import json
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from agentflow.domain.errors import HandlerConfigurationError
from agentflow.domain.validator import ValidationResult
from agentflow.engine.registry import BaseHandler, HandlerContext, HandlerResult

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

VALID_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")


class HttpRequestHandler(BaseHandler):
    """HTTP 请求步骤：参数来自 step_config，返回状态码 / 响应头 / 响应体"""

    name = "http-request"
    version = "1.0.0"
    description = "Execute HTTP requests with comprehensive error handling"
    tags = ["http", "integration"]
    input_schema = {
        "type": "object",
        "required": ["url"],
        "properties": {
            "url": {"type": "string"},
            "method": {"type": "string"},
            "headers": {"type": "object"},
            "timeout": {"type": "number"},
        },
    }
    output_schema = {
        "type": "object",
        "properties": {
            "statusCode": {"type": "number"},
            "headers": {"type": "object"},
            "responseTime": {"type": "number"},
        },
    }

    def __init__(self, session_factory=aiohttp.ClientSession):
        self._session_factory = session_factory

    @staticmethod
    def _config(input_data: Dict[str, Any]) -> Dict[str, Any]:
        return input_data.get("step_config") or {}

    def validate(self, input_data: Dict[str, Any]) -> Optional[ValidationResult]:
        config = self._config(input_data)
        errors = []
        if not config.get("url"):
            errors.append("url is required")
        method = str(config.get("method", "GET")).upper()
        if method not in VALID_METHODS:
            errors.append(f"Invalid method: {method}")
        return ValidationResult(success=not errors, errors=errors)

    async def execute(self, input_data: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        config = self._config(input_data)
        url = config["url"]
        method = str(config.get("method", "GET")).upper()
        headers = config.get("headers", {})
        params = config.get("params", {})
        body = config.get("body")
        timeout = config.get("timeout", 30)
        parse_json = config.get("parse_json", True)
        for key, value in (("headers", headers), ("params", params)):
            if not isinstance(value, dict):
                raise HandlerConfigurationError(self.name, f"{key} must be an object", step_id=context.step_id)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise HandlerConfigurationError(self.name, "timeout must be a positive number", step_id=context.step_id)

        logger.info(f"[http-request] step={context.step_id} {method} {url}")
        start_time = time.time()

        try:
            timeout_obj = aiohttp.ClientTimeout(total=timeout)
            async with self._session_factory(timeout=timeout_obj) as session:
                request_kwargs: Dict[str, Any] = {"url": url, "params": params, "headers": headers}
                if method in ("POST", "PUT", "PATCH") and body is not None:
                    if isinstance(body, (dict, list)):
                        request_kwargs["json"] = body
                    else:
                        request_kwargs["data"] = body

                async with session.request(method, **request_kwargs) as response:
                    elapsed = int((time.time() - start_time) * 1000)
                    text = await response.text()

                    payload: Any = text
                    if parse_json and text:
                        try:
                            payload = json.loads(text)
                        except json.JSONDecodeError:
                            logger.debug("[http-request] 响应不是有效的 JSON 格式")

                    output = {
                        "statusCode": response.status,
                        "headers": dict(response.headers),
                        "body": payload,
                        "responseTime": elapsed,
                    }
                    logger.info(f"[http-request] 完成: 状态码={response.status}, 耗时={elapsed}ms")

                    if response.status >= 400:
                        return HandlerResult(
                            success=False,
                            data=output,
                            error=f"HTTP {response.status} from {url}",
                            error_code="STEP_EXECUTION_ERROR",
                        )
                    return HandlerResult(success=True, data=output)

        except aiohttp.ClientError as e:
            elapsed = int((time.time() - start_time) * 1000)
            logger.error(f"[http-request] 请求失败: {method} {url}, 错误: {e}")
            return HandlerResult(
                success=False,
                data={"responseTime": elapsed},
                error=f"Request failed: {e}",
                error_code="STEP_EXECUTION_ERROR",
            )
