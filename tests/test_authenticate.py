import base64
import json
from unittest.mock import MagicMock, patch

import pytest

from authenticate import (
    ARM_RESOURCE,
    VAULT_RESOURCE,
    ServicePrincipalCredential,
    authenticate_with_secret,
    get_service_principal_credential,
    parse_auth_file,
    principal_object_id,
)


@pytest.fixture
def write_auth(tmp_path):
    def _write(content, name="azure.auth"):
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path
    return _write


class TestParseAuthFile:

    def test_json_format(self, write_auth):
        path = write_auth('{"clientId":"abc","clientSecret":"xyz","tenantId":"t1"}')
        assert parse_auth_file(path) == {"clientId": "abc", "clientSecret": "xyz", "tenantId": "t1"}

    def test_json_spanning_lines_with_extra_keys(self, write_auth):
        path = write_auth(
            "  {\n"
            '  "clientId": "abc",\n'
            '  "clientSecret": "xyz",\n'
            '  "subscriptionId": "sub-1",\n'
            '  "tenantId": "t1"\n'
            "}\n"
        )
        auth = parse_auth_file(path)
        assert auth["clientId"] == "abc"
        assert auth["subscriptionId"] == "sub-1"

    def test_key_value_format(self, write_auth):
        path = write_auth(
            "# comment\n"
            "clientId=abc123\n"
            "clientSecret=se=cret\n"
            "badline\n"
            "tenantId=t1\n"
        )
        assert parse_auth_file(path) == {"clientId": "abc123", "clientSecret": "se=cret", "tenantId": "t1"}

    def test_json_with_byte_order_mark(self, write_auth):
        path = write_auth('\ufeff{"clientId":"abc","clientSecret":"xyz","tenantId":"t1"}')
        auth = parse_auth_file(path)
        assert auth == {"clientId": "abc", "clientSecret": "xyz", "tenantId": "t1"}
        assert get_service_principal_credential(auth).is_complete()

    def test_key_value_with_byte_order_mark(self, write_auth):
        path = write_auth("\ufeffclientId=abc\nclientSecret=xyz\ntenantId=t1\n")
        assert parse_auth_file(path) == {"clientId": "abc", "clientSecret": "xyz", "tenantId": "t1"}

    def test_key_value_crlf_line_endings(self, tmp_path):
        path = tmp_path / "azure.auth"
        path.write_bytes(b"clientId=abc\r\nclientSecret=xyz\r\ntenantId=t1\r\n")
        assert parse_auth_file(path) == {"clientId": "abc", "clientSecret": "xyz", "tenantId": "t1"}

    def test_key_value_keeps_unusual_separators_in_values(self, write_auth):
        path = write_auth("clientSecret=ab\x0ccd\u2028ef\x85gh\nclientId=abc\n")
        assert parse_auth_file(path) == {"clientSecret": "ab\x0ccd\u2028ef\x85gh", "clientId": "abc"}

    def test_json_keeps_line_separator_in_secret(self, write_auth):
        path = write_auth('{"clientId": "abc", "clientSecret": "x\u2028y"}')
        assert parse_auth_file(path)["clientSecret"] == "x\u2028y"

    def test_key_value_only_raw_line_is_trimmed(self, write_auth):
        path = write_auth("   clientId = abc   \n")
        assert parse_auth_file(path) == {"clientId ": " abc"}

    def test_indented_comment_and_blank_lines_skipped(self, write_auth):
        path = write_auth("\n   # clientId=ignored\n\nclientId=abc\n")
        assert parse_auth_file(path) == {"clientId": "abc"}

    def test_duplicate_keys_last_wins(self, write_auth):
        path = write_auth("clientId=first\nclientId=second\n")
        assert parse_auth_file(path) == {"clientId": "second"}

    def test_empty_value(self, write_auth):
        path = write_auth("clientSecret=\n")
        assert parse_auth_file(path) == {"clientSecret": ""}

    def test_empty_file(self, write_auth):
        assert parse_auth_file(write_auth("")) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            parse_auth_file(tmp_path / "nope.auth")

    def test_malformed_json(self, write_auth):
        path = write_auth('{\n"clientId": "abc",\n')
        with pytest.raises(json.JSONDecodeError):
            parse_auth_file(path)

    def test_parse_twice_is_equal(self, write_auth):
        path = write_auth("clientId=abc\ntenantId=t1\n")
        assert parse_auth_file(path) == parse_auth_file(path)


class TestServicePrincipalCredential:

    def test_extracts_fields(self):
        cred = get_service_principal_credential(
            {"clientId": "abc", "clientSecret": "xyz", "tenantId": "t1", "other": "x"})
        assert cred == ServicePrincipalCredential("abc", "xyz", "t1")
        assert cred.is_complete()

    def test_missing_tenant_is_none(self):
        cred = get_service_principal_credential({"clientId": "abc", "clientSecret": "xyz"})
        assert cred.client_id == "abc"
        assert cred.tenant_id is None
        assert not cred.is_complete()

    def test_empty_mapping(self):
        cred = get_service_principal_credential({})
        assert cred == ServicePrincipalCredential(None, None, None)

    def test_is_immutable(self):
        cred = ServicePrincipalCredential("abc", "xyz", "t1")
        with pytest.raises(AttributeError):
            cred.client_id = "other"


class TestAuthenticateWithSecret:

    @patch("authenticate.requests.post")
    def test_returns_token(self, mock_post):
        resp = MagicMock()
        resp.json.return_value = {"access_token": "tok"}
        mock_post.return_value = resp

        assert authenticate_with_secret("t1", "abc", "xyz") == "tok"

        url = mock_post.call_args.args[0]
        data = mock_post.call_args.kwargs["data"]
        assert url == "https://login.microsoftonline.com/t1/oauth2/token"
        assert data["grant_type"] == "client_credentials"
        assert data["client_secret"] == "xyz"
        assert data["resource"] == ARM_RESOURCE
        resp.raise_for_status.assert_called_once()

    @patch("authenticate.requests.post")
    def test_vault_resource_and_authority(self, mock_post):
        mock_post.return_value.json.return_value = {"access_token": "tok"}

        authenticate_with_secret("t1", "abc", "xyz", resource=VAULT_RESOURCE,
                                 authority="https://login.example.com/")

        assert mock_post.call_args.args[0] == "https://login.example.com/t1/oauth2/token"
        assert mock_post.call_args.kwargs["data"]["resource"] == VAULT_RESOURCE

    @patch("authenticate.requests.post")
    def test_missing_token_raises(self, mock_post):
        mock_post.return_value.json.return_value = {"error": "nope"}
        with pytest.raises(RuntimeError):
            authenticate_with_secret("t1", "abc", "xyz")

    @patch("authenticate.requests.post")
    def test_secret_not_printed(self, mock_post, capsys):
        mock_post.return_value.json.return_value = {"access_token": "tok"}
        authenticate_with_secret("t1", "abc", "very-secret")
        assert "very-secret" not in capsys.readouterr().out


def _jwt(claims):
    def enc(obj):
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()
    return f"{enc({'alg': 'none'})}.{enc(claims)}.sig"


class TestPrincipalObjectId:

    def test_reads_oid(self):
        assert principal_object_id(_jwt({"oid": "obj-1", "tid": "t1"})) == "obj-1"

    def test_missing_oid(self):
        with pytest.raises(RuntimeError):
            principal_object_id(_jwt({"tid": "t1"}))

    def test_not_a_jwt(self):
        with pytest.raises(ValueError):
            principal_object_id("opaque-token")
