"""Unit tests for ParserServiceClient.

HTTP calls are mocked at requests.get / requests.post.
"""

import uuid

import pytest
import requests
from unittest.mock import Mock, patch

from topfrag_pipeline.core.parser_client import (
    ConfigurationError,
    ParserServiceClient,
    ServiceUnavailableError,
    UploadFailedError,
)


JOB_ID = str(uuid.uuid4())


@pytest.fixture
def client():
    return ParserServiceClient(
        base_url="http://parser:8080/",
        api_key="parser-key",
        callback_base_url="https://topfrag.example/api/",
    )


@pytest.fixture
def demo_file(tmp_path):
    path = tmp_path / "match.dem"
    path.write_bytes(b"HL2DEMO\x00")
    return path


def response(status_code=200, json_data=None, text=""):
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.ok = 200 <= status_code < 300
    mock_response.text = text
    mock_response.json.return_value = json_data or {}
    return mock_response


class TestConfiguration:
    """Test client configuration."""

    @pytest.mark.parametrize("missing", ["base_url", "api_key", "callback_base_url"])
    def test_missing_configuration(self, missing):
        config = {
            "base_url": "http://parser:8080",
            "api_key": "parser-key",
            "callback_base_url": "https://topfrag.example",
        }
        config[missing] = None

        with pytest.raises(ConfigurationError) as exc_info:
            ParserServiceClient(**config)

        assert exc_info.value.config_key == missing
        assert exc_info.value.status_code == 500

    def test_callback_urls(self, client):
        assert client.progress_callback_url == "https://topfrag.example/api/job/callback/progress"
        assert client.completion_callback_url == "https://topfrag.example/api/job/callback/completion"

    def test_from_env(self):
        client = ParserServiceClient.from_env(
            {
                "PARSER_SERVICE_URL": "http://parser",
                "PARSER_SERVICE_API_KEY": "k",
                "CALLBACK_BASE_URL": "http://app",
            }
        )

        assert client.base_url == "http://parser"


class TestCheckHealth:
    """Test the health check."""

    @patch("requests.get")
    def test_healthy(self, mock_get, client):
        mock_get.return_value = response(200)

        assert client.check_health() is True

        args, kwargs = mock_get.call_args
        assert args[0] == "http://parser:8080/health"
        assert kwargs["headers"]["X-API-Key"] == "parser-key"
        assert kwargs["timeout"] == 10

    @patch("requests.get")
    def test_unhealthy_status(self, mock_get, client):
        mock_get.return_value = response(503, text="draining")

        with pytest.raises(ServiceUnavailableError) as exc_info:
            client.check_health()

        assert exc_info.value.status_code == 503

    @patch("requests.get")
    def test_connection_error(self, mock_get, client):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(ServiceUnavailableError):
            client.check_health()

    @patch("requests.get")
    def test_timeout(self, mock_get, client):
        mock_get.side_effect = requests.exceptions.Timeout()

        with pytest.raises(ServiceUnavailableError) as exc_info:
            client.check_health()

        assert exc_info.value.status_code == 408


class TestUploadDemo:
    """Test demo upload."""

    @patch("requests.post")
    def test_upload(self, mock_post, client, demo_file):
        mock_post.return_value = response(202, {"success": True, "job_id": JOB_ID})

        result = client.upload_demo(str(demo_file), JOB_ID)

        assert result == {"success": True, "job_id": JOB_ID}
        args, kwargs = mock_post.call_args
        assert args[0] == "http://parser:8080/parse-demo"
        assert kwargs["data"]["job_id"] == JOB_ID
        assert kwargs["data"]["completion_callback_url"].endswith("/job/callback/completion")
        assert kwargs["files"]["demo_file"][0] == "match.dem"
        assert kwargs["timeout"] == 300

    def test_missing_file(self, client, tmp_path):
        with pytest.raises(UploadFailedError) as exc_info:
            client.upload_demo(str(tmp_path / "absent.dem"), JOB_ID)

        assert exc_info.value.status_code == 400

    @patch("requests.post")
    def test_upstream_status_carried(self, mock_post, client, demo_file):
        mock_post.return_value = response(413, text="too large")

        with pytest.raises(UploadFailedError) as exc_info:
            client.upload_demo(str(demo_file), JOB_ID)

        assert exc_info.value.status_code == 413

    @patch("requests.post")
    def test_non_json_response(self, mock_post, client, demo_file):
        mock_response = response(200, text="accepted")
        mock_response.json.side_effect = ValueError("no json")
        mock_post.return_value = mock_response

        assert client.upload_demo(str(demo_file), JOB_ID) == {
            "status_code": 200,
            "body": "accepted",
        }
