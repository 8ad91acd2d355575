"""
Unit tests for the ``waffle init`` environment checks.
"""

import json
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError, EndpointConnectionError

from waffle.config import Settings
from waffle.setup_checks import (
    check_bedrock_access,
    check_credentials,
    check_wafr_permissions,
    run_setup_checks,
)


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} message"}}, operation)


class TestCheckCredentials:
    """Tests for check_credentials."""

    def test_success(self, mock_settings: Settings) -> None:
        """Test that the caller account is reported."""
        sts = MagicMock()
        sts.get_caller_identity.return_value = {"Account": "123456789012"}

        result = check_credentials(mock_settings, sts)

        assert result.success
        assert result.message == "AWS credentials configured (account: 123456789012)"

    def test_profile_in_message(self, mock_settings: Settings) -> None:
        """Test that a configured profile is mentioned."""
        mock_settings.aws.profile = "dev"
        sts = MagicMock()
        sts.get_caller_identity.return_value = {"Account": "123456789012"}

        result = check_credentials(mock_settings, sts)

        assert "profile: dev" in result.message

    def test_failure(self, mock_settings: Settings) -> None:
        """Test that credential errors are reported, not raised."""
        sts = MagicMock()
        sts.get_caller_identity.side_effect = _client_error("InvalidClientTokenId", "GetCallerIdentity")

        result = check_credentials(mock_settings, sts)

        assert not result.success
        assert "InvalidClientTokenId" in result.error


class TestCheckBedrockAccess:
    """Tests for check_bedrock_access."""

    def test_success(self, mock_settings: Settings) -> None:
        """Test a one-token probe of the configured model."""
        runtime = MagicMock()

        result = check_bedrock_access(mock_settings, runtime)

        assert result.success
        kwargs = runtime.invoke_model.call_args.kwargs
        assert kwargs["modelId"] == mock_settings.bedrock.model_id
        assert json.loads(kwargs["body"])["max_tokens"] == 1

    def test_validation_exception_counts_as_access(self, mock_settings: Settings) -> None:
        """Test that a rejected request still proves model access."""
        runtime = MagicMock()
        runtime.invoke_model.side_effect = _client_error("ValidationException", "InvokeModel")

        assert check_bedrock_access(mock_settings, runtime).success

    def test_access_denied(self, mock_settings: Settings) -> None:
        """Test the model access hint."""
        runtime = MagicMock()
        runtime.invoke_model.side_effect = _client_error("AccessDeniedException", "InvokeModel")

        result = check_bedrock_access(mock_settings, runtime)

        assert not result.success
        assert "Model access" in result.message

    def test_model_not_found(self, mock_settings: Settings) -> None:
        """Test the unknown model message."""
        runtime = MagicMock()
        runtime.invoke_model.side_effect = _client_error("ResourceNotFoundException", "InvokeModel")

        result = check_bedrock_access(mock_settings, runtime)

        assert not result.success
        assert "not found" in result.message

    def test_connection_error(self, mock_settings: Settings) -> None:
        """Test that transport errors are reported."""
        runtime = MagicMock()
        runtime.invoke_model.side_effect = EndpointConnectionError(endpoint_url="https://bedrock")

        result = check_bedrock_access(mock_settings, runtime)

        assert not result.success
        assert result.message == "Failed to verify Bedrock access"


class TestCheckWAFRPermissions:
    """Tests for check_wafr_permissions."""

    def test_success(self, mock_settings: Settings) -> None:
        """Test a minimal ListWorkloads probe."""
        wafr = MagicMock()

        result = check_wafr_permissions(mock_settings, wafr)

        assert result.success
        wafr.list_workloads.assert_called_once_with(MaxResults=1)

    def test_access_denied(self, mock_settings: Settings) -> None:
        """Test the permissions hint."""
        wafr = MagicMock()
        wafr.list_workloads.side_effect = _client_error("AccessDeniedException", "ListWorkloads")

        result = check_wafr_permissions(mock_settings, wafr)

        assert not result.success
        assert "wellarchitected:ListWorkloads" in result.message


def test_run_setup_checks_order(mock_settings: Settings) -> None:
    """Test that every check runs in order with clients from create_client."""
    client = MagicMock()
    client.get_caller_identity.return_value = {"Account": "123456789012"}

    with patch("waffle.setup_checks.create_client", return_value=client) as mock_create:
        results = run_setup_checks(mock_settings)

    assert [r.name for r in results] == [
        "AWS Credentials",
        "Bedrock Model Access",
        "Well-Architected Tool Permissions",
    ]
    assert all(r.success for r in results)
    assert [c.args[0] for c in mock_create.call_args_list] == ["sts", "bedrock-runtime", "wellarchitected"]
