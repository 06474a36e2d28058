"""
Azure App Service sample: web app backed by Cosmos DB, secrets in Key Vault.

  - Create a Cosmos DB account and store its credentials in a new Key Vault
  - Create a web app with a system-assigned identity that reads those secrets
    from the vault (AZURE_KEYVAULT_URI app setting)
  - Zip-deploy the sample app, warm it up, then delete the resource group

Usage: AZURE_AUTH_LOCATION=<auth file> python manage_webapp_cosmosdb.py
"""
import io
import json
import os
import time
import zipfile
import requests
from pathlib import Path

import arm
from authenticate import (
    AUTH_LOCATION_ENV,
    AUTHORITY_HOST,
    ARM_RESOURCE,
    VAULT_RESOURCE,
    authenticate_with_secret,
    get_service_principal_credential,
    parse_auth_file,
    principal_object_id,
)

VARS_FILE = "variables.json"
API_COSMOS = "2021-10-15"
API_KEYVAULT = "2022-07-01"
API_WEB = "2022-03-01"
API_VAULT_SECRETS = "7.4"

DEFAULTS = {
    "region": "westus",
    "write_region": "eastus",
    "read_region": "centralus",
    "pricing_tier": "S1",
    "net_framework_version": "v4.6",
    "database_name": "tododb",
    "app_dir": "documentdb-dotnet-todo-app",
}


def load_settings(path=VARS_FILE):
    settings = dict(DEFAULTS)
    if Path(path).is_file():
        with open(path, "r", encoding="utf-8") as f:
            settings.update(json.load(f).get("sample", {}))
    return settings


def create_cosmos_account(token, subscription_id, rg_name, name, settings):
    path = arm.resource_id(subscription_id, rg_name, "Microsoft.DocumentDB/databaseAccounts", name)
    body = {
        "location": settings["region"],
        "kind": "GlobalDocumentDB",
        "properties": {
            "databaseAccountOfferType": "Standard",
            "consistencyPolicy": {"defaultConsistencyLevel": "Eventual"},
            "locations": [
                {"locationName": settings["write_region"], "failoverPriority": 0},
                {"locationName": settings["read_region"], "failoverPriority": 1},
            ],
        },
    }
    account = arm.put_resource(token, path, API_COSMOS, body)
    keys = arm.post_action(token, path + "/listKeys", API_COSMOS)
    return account["properties"]["documentEndpoint"], keys["primaryMasterKey"]


def access_policy(tenant_id, object_id):
    return {
        "tenantId": tenant_id,
        "objectId": object_id,
        "permissions": {"secrets": ["all"]},
    }


def create_vault(token, subscription_id, rg_name, name, tenant_id, object_id, settings):
    path = arm.resource_id(subscription_id, rg_name, "Microsoft.KeyVault/vaults", name)
    body = {
        "location": settings["region"],
        "properties": {
            "tenantId": tenant_id,
            "sku": {"family": "A", "name": "standard"},
            "accessPolicies": [access_policy(tenant_id, object_id)],
        },
    }
    vault = arm.put_resource(token, path, API_KEYVAULT, body)
    return vault["properties"]["vaultUri"]


def grant_vault_access(token, subscription_id, rg_name, vault_name, tenant_id, object_id):
    path = arm.resource_id(subscription_id, rg_name, "Microsoft.KeyVault/vaults", vault_name)
    body = {"properties": {"accessPolicies": [access_policy(tenant_id, object_id)]}}
    arm.put_resource(token, path + "/accessPolicies/add", API_KEYVAULT, body, wait=False)


def set_secret(vault_token, vault_uri, name, value):
    url = f"{vault_uri.rstrip('/')}/secrets/{name}?api-version={API_VAULT_SECRETS}"
    r = requests.put(
        url,
        headers={"Authorization": f"Bearer {vault_token}", "Content-Type": "application/json"},
        json={"value": value},
        timeout=60
    )
    r.raise_for_status()
    print(f"[vault] secret '{name}' set")


def create_web_app(token, subscription_id, rg_name, app_name, vault_uri, settings):
    plan_path = arm.resource_id(subscription_id, rg_name, "Microsoft.Web/serverfarms", app_name + "-plan")
    arm.put_resource(token, plan_path, API_WEB, {
        "location": settings["region"],
        "kind": "app",
        "sku": {"name": settings["pricing_tier"]},
        "properties": {},
    })

    site_path = arm.resource_id(subscription_id, rg_name, "Microsoft.Web/sites", app_name)
    return arm.put_resource(token, site_path, API_WEB, {
        "location": settings["region"],
        "kind": "app",
        "identity": {"type": "SystemAssigned"},
        "properties": {
            "serverFarmId": plan_path,
            "siteConfig": {
                "netFrameworkVersion": settings["net_framework_version"],
                "appSettings": [{"name": "AZURE_KEYVAULT_URI", "value": vault_uri}],
            },
        },
    })


def zip_directory(directory) -> bytes:
    root = Path(directory)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for file in sorted(root.rglob("*")):
            if file.is_file():
                zf.write(file, file.relative_to(root).as_posix())
    return buf.getvalue()


def deploy_zip(token, subscription_id, rg_name, app_name, app_dir):
    if not Path(app_dir).is_dir():
        print(f"[deploy] {app_dir} not found, skipping deployment")
        return False
    site_path = arm.resource_id(subscription_id, rg_name, "Microsoft.Web/sites", app_name)
    creds = arm.post_action(token, site_path + "/config/publishingcredentials/list", API_WEB)
    props = creds.get("properties", {})
    r = requests.post(
        f"https://{app_name}.scm.azurewebsites.net/api/zipdeploy",
        auth=(props["publishingUserName"], props["publishingPassword"]),
        data=zip_directory(app_dir),
        headers={"Content-Type": "application/zip"},
        timeout=600
    )
    r.raise_for_status()
    return True


def check_address(url):
    try:
        r = requests.get(url, timeout=60)
        return r.text
    except requests.RequestException as e:
        print(f"[warmup] {url}: {e}")
        return None


def run_sample(token, credential, subscription_id, settings, authority=AUTHORITY_HOST):
    app_name = arm.random_resource_name("webapp-", 20)
    rg_name = arm.random_resource_name("rg1NEMV_", 24)
    vault_name = arm.random_resource_name("vault", 20)
    cosmos_name = arm.random_resource_name("cosmosdb", 20)
    app_url = app_name + ".azurewebsites.net"

    try:
        print(f"[rg] creating {rg_name} in {settings['region']}…")
        arm.create_resource_group(token, subscription_id, rg_name, settings["region"])

        # --- Cosmos DB ---
        print("[cosmos] creating a Cosmos DB account…")
        document_endpoint, primary_key = create_cosmos_account(
            token, subscription_id, rg_name, cosmos_name, settings)
        print(f"[cosmos] created {cosmos_name}: {document_endpoint}")

        # --- Key Vault, service principal gets secret permissions ---
        print("[vault] creating an Azure Key Vault…")
        sp_object_id = principal_object_id(token)
        vault_uri = create_vault(token, subscription_id, rg_name, vault_name,
                                 credential.tenant_id, sp_object_id, settings)
        # access policies take a moment to propagate to the data plane
        time.sleep(10)
        print(f"[vault] created {vault_name}: {vault_uri}")

        # --- Store Cosmos DB credentials in Key Vault ---
        vault_token = authenticate_with_secret(
            credential.tenant_id, credential.client_id, credential.client_secret,
            resource=VAULT_RESOURCE, authority=authority)
        set_secret(vault_token, vault_uri, "azure-documentdb-uri", document_endpoint)
        set_secret(vault_token, vault_uri, "azure-documentdb-key", primary_key)
        set_secret(vault_token, vault_uri, "azure-documentdb-database", settings["database_name"])

        # --- Web app with a new plan ---
        print(f"[webapp] creating web app {app_name} in resource group {rg_name}…")
        app = create_web_app(token, subscription_id, rg_name, app_name, vault_uri, settings)
        app_principal_id = app["identity"]["principalId"]
        print(f"[webapp] created {app_name}, identity {app_principal_id}")

        # --- Let the web app read the vault ---
        grant_vault_access(token, subscription_id, rg_name, vault_name,
                           credential.tenant_id, app_principal_id)
        print(f"[vault] granted secret permissions to {app_name}")

        # --- Deploy ---
        print(f"[deploy] deploying {settings['app_dir']} to {app_name}…")
        if deploy_zip(token, subscription_id, rg_name, app_name, settings["app_dir"]):
            print(f"[deploy] deployment to web app {app_name} completed")

        print(f"[warmup] warming up {app_url}…")
        check_address("http://" + app_url)
        time.sleep(5)
        print(f"[warmup] CURLing {app_url}…")
        body = check_address("http://" + app_url)
        if body is not None:
            print(body[:500])
    finally:
        try:
            print(f"[cleanup] deleting resource group: {rg_name}")
            if arm.delete_resource_group(token, subscription_id, rg_name):
                print(f"[cleanup] deleted resource group: {rg_name}")
            else:
                print("[cleanup] Did not create any resources in Azure. No clean up is necessary")
        except Exception as e:
            print(f"[cleanup] failed to delete {rg_name}: {e}")


def main():
    auth_file = os.environ.get(AUTH_LOCATION_ENV)
    if not auth_file:
        raise SystemExit(f"{AUTH_LOCATION_ENV} must point to an auth file.")
    settings = load_settings()

    auth = parse_auth_file(auth_file)
    credential = get_service_principal_credential(auth)
    if not credential.is_complete():
        raise SystemExit(f"{auth_file} must define clientId, clientSecret and tenantId.")

    authority = auth.get("activeDirectoryEndpointUrl") or AUTHORITY_HOST
    token = authenticate_with_secret(credential.tenant_id, credential.client_id,
                                     credential.client_secret, resource=ARM_RESOURCE,
                                     authority=authority)

    subscription_id = auth.get("subscriptionId")
    if not subscription_id:
        subscriptions = arm.list_subscriptions(token)
        if not subscriptions:
            raise SystemExit("No subscription visible to this service principal.")
        subscription_id = subscriptions[0]
    print(f"[start] selected subscription: {subscription_id}")

    run_sample(token, credential, subscription_id, settings, authority=authority)
    print("[done] Goodbye!")


if __name__ == "__main__":
    main()
