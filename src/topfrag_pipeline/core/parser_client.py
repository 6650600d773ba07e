"""Parser Service Client - HTTP gateway to the external demo parser.

This module provides the outbound side of the parser integration:
- Health check with a short timeout
- Multipart demo upload with a long timeout and callback URLs
- Typed errors carrying the upstream status code
- Full request context logged before every error is raised
"""

import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import requests
from requests.exceptions import RequestException, Timeout

from ..metrics import PARSER_REQUESTS, PARSER_UPLOAD_DURATION


logger = logging.getLogger(__name__)


class ParserServiceError(Exception):
    """Base exception for parser service errors."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(ParserServiceError):
    """Raised when the client is missing required configuration."""

    def __init__(self, config_key: str):
        super().__init__(
            f"Parser service configuration error: Missing or invalid '{config_key}'", 500
        )
        self.config_key = config_key


class ServiceUnavailableError(ParserServiceError):
    """Raised when the health check fails or cannot connect."""

    def __init__(self, reason: str = "Service health check failed", status_code: int = 503):
        super().__init__(f"Parser service is unavailable: {reason}", status_code)


class UploadFailedError(ParserServiceError):
    """Raised when the demo upload fails (carries the upstream status code)."""

    def __init__(self, reason: str = "Demo upload failed", status_code: int = 500):
        super().__init__(f"Demo upload failed: {reason}", status_code)


class ParserServiceClient:
    """Client for the external demo parser service.

    Example:
        >>> client = ParserServiceClient.from_env()
        >>> client.check_health()
        True
        >>> client.upload_demo("/data/demos/match.dem", job_id)
        {'success': True, 'job_id': '...'}
    """

    API_KEY_HEADER = "X-API-Key"
    PARSE_DEMO_ENDPOINT = "/parse-demo"
    HEALTH_ENDPOINT = "/health"
    PROGRESS_CALLBACK_ENDPOINT = "/job/callback/progress"
    COMPLETION_CALLBACK_ENDPOINT = "/job/callback/completion"

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        callback_base_url: Optional[str],
        health_timeout: int = 10,
        upload_timeout: int = 300,
    ):
        """Initialize parser service client.

        Args:
            base_url: Parser service base URL
            api_key: Shared API key sent in the X-API-Key header
            callback_base_url: Base URL the parser posts progress/completion to
            health_timeout: Health check timeout in seconds (default: 10)
            upload_timeout: Upload timeout in seconds (default: 300)

        Raises:
            ConfigurationError: If any URL or the API key is missing
        """
        if not base_url:
            raise self._log_error(ConfigurationError("base_url"), url=None)
        if not api_key:
            raise self._log_error(ConfigurationError("api_key"), url=base_url)
        if not callback_base_url:
            raise self._log_error(ConfigurationError("callback_base_url"), url=base_url)

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.health_timeout = health_timeout
        self.upload_timeout = upload_timeout

        callback_base = callback_base_url.rstrip("/")
        self.progress_callback_url = callback_base + self.PROGRESS_CALLBACK_ENDPOINT
        self.completion_callback_url = callback_base + self.COMPLETION_CALLBACK_ENDPOINT

        logger.info(f"Initialized ParserServiceClient for {self.base_url}")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ParserServiceClient":
        """Build a client from PARSER_SERVICE_URL, PARSER_SERVICE_API_KEY and CALLBACK_BASE_URL."""
        env = os.environ if env is None else env
        return cls(
            base_url=env.get("PARSER_SERVICE_URL"),
            api_key=env.get("PARSER_SERVICE_API_KEY"),
            callback_base_url=env.get("CALLBACK_BASE_URL"),
        )

    def _headers(self) -> Dict[str, str]:
        return {self.API_KEY_HEADER: self.api_key, "Accept": "application/json"}

    @staticmethod
    def _log_error(error: ParserServiceError, /, **context: Any) -> ParserServiceError:
        """Log a parser error with its request context, then hand it back for raising."""
        details = ", ".join(f"{key}={value}" for key, value in context.items())
        logger.error(
            f"{type(error).__name__}: {error} (status={error.status_code}"
            + (f", {details})" if details else ")")
        )
        return error

    def check_health(self) -> bool:
        """Check that the parser service is up.

        Returns:
            True when the service answers 2xx

        Raises:
            ServiceUnavailableError: On connection failure or non-2xx response
        """
        url = self.base_url + self.HEALTH_ENDPOINT

        try:
            response = requests.get(url, headers=self._headers(), timeout=self.health_timeout)
        except Timeout as e:
            PARSER_REQUESTS.labels(endpoint="health", status="failed").inc()
            raise self._log_error(
                ServiceUnavailableError(f"timed out after {self.health_timeout} seconds", 408),
                url=url,
                error=e,
            )
        except RequestException as e:
            PARSER_REQUESTS.labels(endpoint="health", status="failed").inc()
            raise self._log_error(ServiceUnavailableError(), url=url, error=e)

        if not response.ok:
            PARSER_REQUESTS.labels(endpoint="health", status="failed").inc()
            raise self._log_error(
                ServiceUnavailableError(status_code=response.status_code),
                url=url,
                body=response.text,
            )

        PARSER_REQUESTS.labels(endpoint="health", status="success").inc()
        logger.debug(f"Parser service healthy: {url}")
        return True

    def upload_demo(self, file_path: str, job_id: str) -> Dict[str, Any]:
        """Upload a demo file for parsing.

        Sends the demo as multipart form data along with the job id and the
        progress/completion callback URLs.

        Args:
            file_path: Local path to the .dem file
            job_id: Processing job UUID used as the correlation key

        Returns:
            Parsed JSON response from the parser service

        Raises:
            UploadFailedError: On missing file, connection failure or non-2xx response
        """
        url = self.base_url + self.PARSE_DEMO_ENDPOINT
        path = Path(file_path)

        if not path.is_file():
            PARSER_REQUESTS.labels(endpoint="parse-demo", status="failed").inc()
            raise self._log_error(
                UploadFailedError("demo file not found", 400),
                url=url,
                file=file_path,
                job_id=job_id,
            )

        form_data = {
            "job_id": job_id,
            "progress_callback_url": self.progress_callback_url,
            "completion_callback_url": self.completion_callback_url,
        }

        start_time = time.time()
        try:
            with open(path, "rb") as demo_file:
                response = requests.post(
                    url,
                    headers=self._headers(),
                    data=form_data,
                    files={"demo_file": (path.name, demo_file, "application/octet-stream")},
                    timeout=self.upload_timeout,
                )
        except Timeout as e:
            PARSER_REQUESTS.labels(endpoint="parse-demo", status="failed").inc()
            raise self._log_error(
                UploadFailedError(f"timed out after {self.upload_timeout} seconds", 408),
                url=url,
                file=file_path,
                job_id=job_id,
                error=e,
            )
        except RequestException as e:
            PARSER_REQUESTS.labels(endpoint="parse-demo", status="failed").inc()
            raise self._log_error(
                UploadFailedError(), url=url, file=file_path, job_id=job_id, error=e
            )
        finally:
            PARSER_UPLOAD_DURATION.observe(time.time() - start_time)

        if not response.ok:
            PARSER_REQUESTS.labels(endpoint="parse-demo", status="failed").inc()
            raise self._log_error(
                UploadFailedError(status_code=response.status_code),
                url=url,
                file=file_path,
                job_id=job_id,
                body=response.text,
            )

        PARSER_REQUESTS.labels(endpoint="parse-demo", status="success").inc()
        logger.info(f"Uploaded demo {path.name} for job {job_id}")

        try:
            return response.json()
        except ValueError:
            return {"status_code": response.status_code, "body": response.text}
