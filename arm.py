import time
import uuid
import requests

ARM_ENDPOINT = "https://management.azure.com"
API_RESOURCE_GROUPS = "2021-04-01"
API_SUBSCRIPTIONS = "2020-01-01"

TERMINAL_FAILURES = ("Failed", "Canceled")


def random_resource_name(prefix: str, max_len: int) -> str:
    """prefix followed by random hex, cut to max_len."""
    suffix = uuid.uuid4().hex + uuid.uuid4().hex
    return (prefix + suffix)[:max_len]


def resource_id(subscription_id, resource_group, provider=None, name=None):
    rid = f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
    if provider:
        rid += f"/providers/{provider}/{name}"
    return rid


def arm_url(path, api_version):
    return f"{ARM_ENDPOINT}{path}?api-version={api_version}"


def _headers(token):
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


def get_resource(token, path, api_version):
    r = requests.get(arm_url(path, api_version), headers=_headers(token), timeout=60)
    r.raise_for_status()
    return r.json()


def poll_until_provisioned(token, path, api_version, timeout=900, every=10):
    start = time.time()
    while True:
        body = get_resource(token, path, api_version) or {}
        state = (body.get("properties") or {}).get("provisioningState")
        print(f"[arm poll] {path.rsplit('/', 1)[-1]} state={state}")
        if state in (None, "Succeeded"):
            return body
        if state in TERMINAL_FAILURES:
            raise RuntimeError(f"[arm poll] {path} {state}: {body}")
        if time.time() - start > timeout:
            raise TimeoutError(f"[arm poll] timeout on {path}, last state={state}")
        time.sleep(every)


def put_resource(token, path, api_version, body, timeout=900, every=10, wait=True):
    """PUT a resource and, if `wait`, poll it until provisioning settles.

    Sub-resource operations that cannot be read back (e.g. vault
    `accessPolicies/add`) should pass wait=False.
    """
    url = arm_url(path, api_version)
    print(f"[arm] PUT {url}")
    r = requests.put(url, headers=_headers(token), json=body, timeout=120)
    r.raise_for_status()
    if not wait:
        return r.json() if r.content else {}
    return poll_until_provisioned(token, path, api_version, timeout=timeout, every=every)


def post_action(token, path, api_version, body=None):
    url = arm_url(path, api_version)
    print(f"[arm] POST {url}")
    r = requests.post(url, headers=_headers(token), json=body, timeout=120)
    r.raise_for_status()
    return r.json() if r.content else {}


def list_subscriptions(token):
    body = get_resource(token, "/subscriptions", API_SUBSCRIPTIONS)
    return [s["subscriptionId"] for s in body.get("value", [])]


def create_resource_group(token, subscription_id, name, location):
    return put_resource(token, resource_id(subscription_id, name), API_RESOURCE_GROUPS,
                        {"location": location})


def delete_resource_group(token, subscription_id, name, timeout=1800, every=15):
    """Delete a resource group and wait for it to go away.

    Returns False when the group does not exist.
    """
    url = arm_url(resource_id(subscription_id, name), API_RESOURCE_GROUPS)
    print(f"[arm] DELETE {url}")
    r = requests.delete(url, headers=_headers(token), timeout=120)
    if r.status_code == 404:
        return False
    r.raise_for_status()
    location = r.headers.get("Location")
    if r.status_code != 202 or not location:
        return True

    start = time.time()
    while True:
        time.sleep(int(r.headers.get("Retry-After", every)))
        r = requests.get(location, headers=_headers(token), timeout=60)
        if r.status_code != 202:
            r.raise_for_status()
            return True
        print(f"[arm poll] resource group {name} still deleting…")
        if time.time() - start > timeout:
            raise TimeoutError(f"[arm poll] timeout deleting resource group {name}")
