# loyalty/services/walletpush_service.py
"""
WalletPush pass issuing service client, using direct HTTP requests.

- issue_pass():   POST /templates/{template_id}/pass
- update_field(): PUT  /passes/{pass_type_id}/{serial}/values/{field}

Credentials are per program and always passed in explicitly; nothing here
keeps credentials in module state.
"""
from dataclasses import dataclass
import os
import logging

import requests
from dotenv import load_dotenv

from loyalty.exceptions import ExternalServiceFailure

load_dotenv()

logger = logging.getLogger(__name__)

# Configuration
BASE_URL = os.getenv("WALLETPUSH_BASE_URL", "https://app.walletpush.io/api/v1").rstrip("/")
TIMEOUT = float(os.getenv("WALLETPUSH_TIMEOUT_SECONDS", "10"))


@dataclass(frozen=True)
class WalletPushCredentials:
    template_id: str
    api_key: str
    pass_type_id: str


@dataclass
class IssuedPass:
    serial: str
    apple_url: str | None = None
    google_url: str | None = None


def credentials_for(program) -> WalletPushCredentials | None:
    """All three values must be set before passes can be issued or updated."""
    if not (program.walletpush_template_id and program.walletpush_api_key and program.walletpush_pass_type_id):
        return None
    return WalletPushCredentials(
        template_id=program.walletpush_template_id,
        api_key=program.walletpush_api_key,
        pass_type_id=program.walletpush_pass_type_id,
    )


def _headers(api_key: str) -> dict:
    return {
        "Authorization": api_key,
        "Content-Type": "application/json",
    }


def make_api_request(method, endpoint, api_key, data=None):
    """Make an authenticated request to the WalletPush API."""
    url = f"{BASE_URL}/{endpoint}"

    try:
        response = requests.request(method, url, headers=_headers(api_key), json=data, timeout=TIMEOUT)
    except requests.RequestException as e:
        logger.error(f"WalletPush request exception: {method} {endpoint}: {e}")
        raise ExternalServiceFailure(f"WalletPush request failed: {e}") from e

    if response.status_code not in (200, 201, 204):
        logger.error(f"WalletPush request failed: {response.status_code} - {response.text}")
        raise ExternalServiceFailure(f"WalletPush returned {response.status_code} for {method} {endpoint}")

    if response.status_code == 204 or not response.content:
        return {}

    try:
        return response.json()
    except ValueError as e:
        raise ExternalServiceFailure("WalletPush returned a non-JSON body") from e


def _apple_download_url(raw_url: str | None) -> str | None:
    # install page -> direct .pkpass download
    if not raw_url:
        return None
    if "/api/pass-install/" in raw_url:
        return raw_url.replace("/api/pass-install/", "/api/apple-pass/") + "/download"
    return raw_url


def issue_pass(credentials: WalletPushCredentials, member: dict, initial_fields: dict[str, str]) -> IssuedPass:
    """
    Create a pass from the program's template.

    Field names in the body must match the template placeholders exactly.
    """
    body = {
        **initial_fields,
        "First_Name": member.get("first_name") or "Qwikker",
        "Last_Name": member.get("last_name") or "Member",
        "Email": member.get("email"),
    }

    logger.info(f"Issuing loyalty pass from template {credentials.template_id} (fields: {list(body)})")
    data = make_api_request("POST", f"templates/{credentials.template_id}/pass", credentials.api_key, body)

    apple = data.get("apple") or {}
    google = data.get("google") or {}
    serial = data.get("serialNumber") or data.get("serial") or data.get("id")
    if not serial:
        logger.error(f"WalletPush issue response had no serial: {data}")
        raise ExternalServiceFailure("WalletPush did not return a pass serial")

    issued = IssuedPass(
        serial=str(serial),
        apple_url=_apple_download_url(data.get("appleUrl") or data.get("apple_url") or apple.get("downloadUrl")),
        google_url=data.get("googleUrl") or data.get("google_url") or google.get("saveUrl"),
    )
    logger.info(f"Issued loyalty pass {issued.serial} (google: {bool(issued.google_url)})")
    return issued


def update_field(credentials: WalletPushCredentials, serial: str, field_name: str, value: str, push: bool = False) -> None:
    """
    Write one field on an issued pass.

    push=True asks the service to notify the device now; batches should only
    set it on their last write.
    """
    make_api_request(
        "PUT",
        f"passes/{credentials.pass_type_id}/{serial}/values/{field_name}",
        credentials.api_key,
        {"value": value, "push": push},
    )


def push_fields(credentials: WalletPushCredentials, serial: str, fields: dict[str, str]) -> None:
    """
    Write a batch of fields with exactly one device notification, fired by
    the last write.
    """
    items = list(fields.items())
    for index, (name, value) in enumerate(items):
        update_field(credentials, serial, name, value, push=index == len(items) - 1)
    logger.debug(f"Pushed {len(items)} field(s) to pass {serial}")
