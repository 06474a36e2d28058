import base64
import json
import os
import requests
from dataclasses import dataclass
from typing import Optional

AUTH_LOCATION_ENV = "AZURE_AUTH_LOCATION"
AUTHORITY_HOST = "https://login.microsoftonline.com"
ARM_RESOURCE = "https://management.azure.com/"
VAULT_RESOURCE = "https://vault.azure.net"


@dataclass(frozen=True)
class ServicePrincipalCredential:
    client_id: Optional[str]
    client_secret: Optional[str]
    tenant_id: Optional[str] = None

    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.tenant_id)


def parse_auth_file(path) -> dict:
    """Read an auth file, either a JSON object or `key=value` lines.

    Comment lines (`#`) and lines without `=` are skipped. Only the first `=`
    splits a line, so values may contain `=`. Duplicate keys: last one wins.
    """
    # utf-8-sig drops a BOM; universal newlines leave only "\n" as separator
    with open(path, "r", encoding="utf-8-sig") as f:
        text = f.read()
    lines = text.split("\n")

    if lines[0].strip().startswith("{"):
        return json.loads(text)

    auth = {}
    for line in lines:
        line = line.strip()
        if line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        auth[key] = value
    return auth


def get_service_principal_credential(auth: dict) -> ServicePrincipalCredential:
    # missing keys are left as None, callers check is_complete()
    return ServicePrincipalCredential(
        client_id=auth.get("clientId"),
        client_secret=auth.get("clientSecret"),
        tenant_id=auth.get("tenantId"),
    )


def authenticate_with_secret(tenant_id: str, client_id: str, client_secret: str,
                             resource: str = ARM_RESOURCE,
                             authority: str = AUTHORITY_HOST) -> str:

    url = f"{authority.rstrip('/')}/{tenant_id}/oauth2/token"
    headers = {"Content-Type": "application/x-www-form-urlencoded"}
    data = {
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
        "resource": resource
    }
    print(
        f"Authenticating with secret on Azure:\n"
        f"\tTenant ID: {tenant_id}\n"
        f"\tClient ID: {client_id}\n"
        f"\tResource:  {resource}"
    )
    resp = requests.post(url, data=data, headers=headers, timeout=60)
    resp.raise_for_status()
    token = resp.json().get("access_token")
    if not token:
        raise RuntimeError(f"No access_token in response:\n{resp.text}")
    print("Authentication successful.")
    return token


def principal_object_id(token: str) -> str:
    """Return the `oid` claim of an access token (the caller's object id)."""
    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("Access token is not a JWT")
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    claims = json.loads(base64.urlsafe_b64decode(payload))
    oid = claims.get("oid")
    if not oid:
        raise RuntimeError("Access token has no 'oid' claim")
    return oid


if __name__ == "__main__":
    auth_file = os.environ.get(AUTH_LOCATION_ENV)
    if not auth_file:
        raise SystemExit(f"{AUTH_LOCATION_ENV} is not set")
    cred = get_service_principal_credential(parse_auth_file(auth_file))
    if not cred.is_complete():
        raise SystemExit(f"{auth_file} must define clientId, clientSecret and tenantId")
    token = authenticate_with_secret(cred.tenant_id, cred.client_id, cred.client_secret)
    print("Auth OK — token (start):", token[:60] + "...")
