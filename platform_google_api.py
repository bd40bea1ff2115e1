'''
Google Play Developer API access. The client is constructed once at startup by `init_play_client`
and shared by every request. `httplib2.Http` is not thread-safe, so every call executes over its own
authorized transport built from the shared credentials and concurrent requests never wait on each
other.

`validate_subscription_purchase` confirms the state of a purchase token before a notification about
it is trusted, in particular it reports whether the purchase is a test purchase.
'''

import enum
import json
import typing
import logging
import traceback
import dataclasses

import httplib2
import google_auth_httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from google.oauth2 import service_account

import base
from base import json_dict_require_str, json_dict_require_array, json_dict_optional_bool, \
    json_dict_optional_str, json_dict_optional_obj, safe_dump_arbitrary_value_or_type
from platform_google_types import SubscriptionV2Data, SubscriptionV2DataLineItem, SubscriptionsV2State, \
    json_dict_optional_google_timestamp, json_dict_optional_google_empty_object_bool

log = logging.Logger('GOOGLE')

SCOPES = ['https://www.googleapis.com/auth/androidpublisher']

SUBSCRIPTION_PURCHASE_V2_KIND = 'androidpublisher#subscriptionPurchaseV2'

@dataclasses.dataclass
class PlayClient:
    service:      typing.Any
    package_name: str
    credentials:  typing.Any = None

class PlayClientInitStatus(enum.IntEnum):
    Ok       = 0
    Disabled = 1 # No credentials were configured
    Failed   = 2 # Credentials were configured but the client could not be built from them

@dataclasses.dataclass
class PlayClientInitResult:
    status: PlayClientInitStatus = PlayClientInitStatus.Disabled
    client: PlayClient | None    = None
    error:  str                  = ''

class ValidationStatus(enum.IntEnum):
    Verified    = 0
    Unavailable = 1 # No client, the API call failed or its response could not be parsed

@dataclasses.dataclass
class SubscriptionValidation:
    status: ValidationStatus          = ValidationStatus.Unavailable
    data:   SubscriptionV2Data | None = None
    error:  str                       = ''

def init_play_client(package_name: str, credentials_path: str, credentials_json: str) -> PlayClientInitResult:
    """
    Build the Android Publisher client from a service account. The credentials are taken from the
    JSON string if set, otherwise from the file at `credentials_path`.
    """
    result = PlayClientInitResult()
    if len(credentials_json) == 0 and len(credentials_path) == 0:
        result.error = 'No Google service account credentials configured'
        return result

    try:
        if len(credentials_json):
            info        = typing.cast(dict[str, typing.Any], json.loads(credentials_json))
            credentials = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
        else:
            credentials = service_account.Credentials.from_service_account_file(credentials_path, scopes=SCOPES)
        service       = build('androidpublisher', 'v3', credentials=credentials, cache_discovery=False)
        result.client = PlayClient(service=service, package_name=package_name, credentials=credentials)
        result.status = PlayClientInitStatus.Ok
    except Exception as e:
        result.status = PlayClientInitStatus.Failed
        result.error  = f'Failed to build the Google Play Developer API client: {e}'
    return result

def fetch_subscription_v2(client: PlayClient, purchase_token: str) -> typing.Any:
    http    = google_auth_httplib2.AuthorizedHttp(client.credentials, http=httplib2.Http())
    request = client.service.purchases().subscriptionsv2().get(packageName=client.package_name, token=purchase_token)
    result  = request.execute(http=http)
    return result

def parse_subscription_v2_response(response: typing.Any, err: base.ErrorSink) -> SubscriptionV2Data | None:
    if not isinstance(response, dict):
        err.msg_list.append(f'purchases.subscriptionsv2.get response is not a valid dict: {safe_dump_arbitrary_value_or_type(response)}')
        return None

    response = typing.cast(dict[str, base.JSONValue], response)

    # Delete known PII just in case something logs somewhere
    if 'subscribeWithGoogleInfo' in response:
        del response['subscribeWithGoogleInfo']

    kind = json_dict_require_str(response, 'kind', err)
    if not err.has() and kind != SUBSCRIPTION_PURCHASE_V2_KIND:
        err.msg_list.append(f'purchases.subscriptionsv2.get has incorrect kind: {kind}')

    line_items_arr = json_dict_require_array(response, 'lineItems', err)
    if not err.has() and len(line_items_arr) == 0:
        err.msg_list.append('purchases.subscriptionsv2.get has no lineItems')

    if err.has():
        return None

    result = SubscriptionV2Data()
    for index, line_item in enumerate(line_items_arr):
        if not isinstance(line_item, dict):
            err.msg_list.append(f'purchases.subscriptionsv2.get line item at index {index} not a dict: {safe_dump_arbitrary_value_or_type(line_item)}')
            continue

        item             = SubscriptionV2DataLineItem()
        item.product_id  = json_dict_require_str(line_item, 'productId', err)
        item.expiry_time = json_dict_optional_google_timestamp(line_item, 'expiryTime', err)

        # NOTE: Can either be auto-renewing or prepaid, prepaid plans don't renew
        auto_renewing_plan = json_dict_optional_obj(line_item, 'autoRenewingPlan', err)
        if auto_renewing_plan is not None:
            item.auto_renew_enabled = json_dict_optional_bool(auto_renewing_plan, 'autoRenewEnabled', False, err)
        result.line_items.append(item)

    result.start_time      = json_dict_optional_google_timestamp(response, 'startTime', err)
    result.latest_order_id = json_dict_optional_str(response, 'latestOrderId', err)
    result.test_purchase   = json_dict_optional_google_empty_object_bool(response, 'testPurchase', err)

    state = json_dict_optional_str(response, 'subscriptionState', err)
    if state is not None:
        try:
            result.subscription_state = SubscriptionsV2State(state)
        except ValueError:
            log.warning(f'Unknown subscription state "{state}" in purchases.subscriptionsv2.get response')

    if err.has():
        return None
    return result

def validate_subscription_purchase(client: PlayClient | None, purchase_token: str) -> SubscriptionValidation:
    result = SubscriptionValidation()
    if client is None:
        result.error = 'Google Play Developer API client is not available'
        return result

    try:
        response = fetch_subscription_v2(client, purchase_token)
    except HttpError as e:
        result.error = f'purchases.subscriptionsv2.get failed with HTTP {e.status_code}: {e.reason}'
        return result
    except Exception:
        result.error = f'purchases.subscriptionsv2.get failed: {traceback.format_exc()}'
        return result

    err         = base.ErrorSink()
    result.data = parse_subscription_v2_response(response, err)
    if result.data is None:
        result.error = f'purchases.subscriptionsv2.get response could not be parsed: {err.build()}'
    else:
        result.status = ValidationStatus.Verified
    return result
