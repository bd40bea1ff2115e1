'''
Apple App Store Server Notifications (V2) ingestion.

A notification arrives as `{"signedPayload": "<JWS>"}`. The payload embeds two more JWS tokens, the
transaction info and the renewal info. With Apple's root certificates configured the three tokens
are verified with the App Store Server Library's `SignedDataVerifier`. Without them the tokens are
only decoded (PyJWT, signature not verified) which is meant for local development, the bundle ID is
still checked if one is configured.

Either way the tokens are flattened into an `AppleNotification` which is then mapped onto a
canonical event through `APPLE_EVENT_MAPPERS`.

For version 2 notifications Apple retries five times, at 1, 12, 24, 48, and 72 hours after the
previous attempt when the response is not a 200.

  https://developer.apple.com/documentation/appstoreservernotifications/responding-to-app-store-server-notifications
'''

import jwt
import flask
import typing
import pathlib
import logging
import traceback
import dataclasses

from appstoreserverlibrary.models.Environment                  import Environment                  as AppleEnvironment
from appstoreserverlibrary.models.JWSTransactionDecodedPayload import JWSTransactionDecodedPayload as AppleJWSTransactionDecodedPayload
from appstoreserverlibrary.models.JWSRenewalInfoDecodedPayload import JWSRenewalInfoDecodedPayload as AppleJWSRenewalInfoDecodedPayload
from appstoreserverlibrary.models.ResponseBodyV2DecodedPayload import ResponseBodyV2DecodedPayload as AppleResponseBodyV2DecodedPayload
from appstoreserverlibrary.models.Subtype                      import Subtype                      as AppleSubtype
from appstoreserverlibrary.models.NotificationTypeV2           import NotificationTypeV2           as AppleNotificationV2

from appstoreserverlibrary.signed_data_verifier import (
    VerificationException as AppleVerificationException,
    SignedDataVerifier    as AppleSignedDataVerifier,
)

import base
import canonical
import server
from base import Platform

log = logging.Logger('APPLE')

ROUTE_WEBHOOK:                        str = '/apple/webhook'
FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY: str = 'sub_sync_backend_platform_apple_core'

# Auto-renew status reported in the renewal info, 0 means the user turned auto-renew off
APPLE_AUTO_RENEW_STATUS_OFF:          int = 0

# The object containing routes that you register onto a Flask app to turn it
# into an app that accepts Apple App Store subscription notifications
flask_blueprint = flask.Blueprint('sub-sync-backend-apple', __name__)

@dataclasses.dataclass
class Core:
    bundle_id:            str                             = ''
    signed_data_verifier: AppleSignedDataVerifier | None  = None

@dataclasses.dataclass
class AppleNotification:
    notification_type:  str        = ''
    subtype:            str | None = None
    uuid:               str | None = None
    environment:        str | None = None
    bundle_id:          str | None = None
    original_tx_id:     str | None = None
    product_id:         str | None = None
    expires_unix_ts_ms: int | None = None
    auto_renew_status:  int | None = None

    def is_sandbox(self) -> bool:
        result = self.environment is not None and self.environment != AppleEnvironment.PRODUCTION.value
        return result

    def describe(self) -> str:
        result = self.notification_type
        if self.subtype:
            result += f' ({self.subtype})'
        return result

AppleEventMapper: typing.TypeAlias = typing.Callable[[AppleNotification, str], canonical.CanonicalEvent]

def init(bundle_id:            str,
         app_apple_id:         int | None,
         root_cert_paths:      list[str],
         enable_online_checks: bool,
         sandbox_env:          bool,
         err:                  base.ErrorSink) -> Core:
    result = Core(bundle_id=bundle_id)
    if len(root_cert_paths) == 0:
        log.warning('No Apple root certificates configured, notification signatures will NOT be verified')
        return result

    root_certs: list[bytes] = []
    for path in root_cert_paths:
        try:
            root_certs.append(pathlib.Path(path).read_bytes())
        except OSError as e:
            err.msg_list.append(f'Failed to read Apple root certificate at {path}: {e}')

    apple_env = AppleEnvironment.SANDBOX if sandbox_env else AppleEnvironment.PRODUCTION
    if apple_env == AppleEnvironment.PRODUCTION and app_apple_id is None:
        err.msg_list.append('Apple app ID must be set to verify notifications in the production environment')

    if not err.has():
        result.signed_data_verifier = AppleSignedDataVerifier(root_certificates    = root_certs,
                                                              enable_online_checks = enable_online_checks,
                                                              environment          = apple_env,
                                                              bundle_id            = bundle_id,
                                                              app_apple_id         = app_apple_id)
    return result

def equip_flask_routes(core: Core, flask_app: flask.Flask):
    flask_app.register_blueprint(flask_blueprint)

    # NOTE: Add the core data structure for Apple into the flask config dictionary. This makes it
    # accessible in routes across concurrent connections.
    flask_app.config[FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY] = core

def _enum_or_raw(value: typing.Any, raw_value: typing.Any) -> typing.Any:  # pyright: ignore[reportAny]
    # NOTE: The library leaves the enum field as None when Apple sends a value it does not know
    # about yet, the raw* field always holds what was sent
    result = raw_value
    if value is not None:
        result = value.value if hasattr(value, 'value') else value
    return result

def notification_from_verified_payloads(body:         AppleResponseBodyV2DecodedPayload,
                                        tx_info:      AppleJWSTransactionDecodedPayload | None,
                                        renewal_info: AppleJWSRenewalInfoDecodedPayload | None) -> AppleNotification:
    result                   = AppleNotification()
    result.notification_type = typing.cast(str, _enum_or_raw(body.notificationType, body.rawNotificationType) or '')
    result.subtype           = typing.cast(str | None, _enum_or_raw(body.subtype, body.rawSubtype))
    result.uuid              = body.notificationUUID
    if body.data:
        result.environment = typing.cast(str | None, _enum_or_raw(body.data.environment, body.data.rawEnvironment))
        result.bundle_id   = body.data.bundleId
    if tx_info:
        result.original_tx_id     = tx_info.originalTransactionId
        result.product_id         = tx_info.productId
        result.expires_unix_ts_ms = tx_info.expiresDate
    if renewal_info:
        result.auto_renew_status = typing.cast(int | None, _enum_or_raw(renewal_info.autoRenewStatus, renewal_info.rawAutoRenewStatus))
        if result.original_tx_id is None:
            result.original_tx_id = renewal_info.originalTransactionId
        if result.product_id is None:
            result.product_id = renewal_info.autoRenewProductId
    return result

def decode_verified_notification(verifier: AppleSignedDataVerifier, signed_payload: str, err: base.ErrorSink) -> AppleNotification | None:
    try:
        body:         AppleResponseBodyV2DecodedPayload        = verifier.verify_and_decode_notification(signed_payload)
        tx_info:      AppleJWSTransactionDecodedPayload | None = None
        renewal_info: AppleJWSRenewalInfoDecodedPayload | None = None
        if body.data and body.data.signedTransactionInfo:
            tx_info = verifier.verify_and_decode_signed_transaction(body.data.signedTransactionInfo)
        if body.data and body.data.signedRenewalInfo:
            renewal_info = verifier.verify_and_decode_renewal_info(body.data.signedRenewalInfo)
    except AppleVerificationException as e:
        err.msg_list.append(f'Apple notification failed verification: {e}')
        return None

    result = notification_from_verified_payloads(body, tx_info, renewal_info)
    return result

def _decode_jws_unverified(token: str, label: str, err: base.ErrorSink) -> base.JSONObject:
    result: base.JSONObject = {}
    try:
        result = typing.cast(base.JSONObject, jwt.decode(token, options={'verify_signature': False}))
    except jwt.PyJWTError as e:
        err.msg_list.append(f'Apple {label} could not be decoded: {e}')
    return result

def decode_unverified_notification(core: Core, signed_payload: str, err: base.ErrorSink) -> AppleNotification | None:
    body = _decode_jws_unverified(signed_payload, 'signed payload', err)
    if err.has():
        return None

    result                   = AppleNotification()
    result.notification_type = base.json_dict_require_str(body, 'notificationType', err)
    result.subtype           = base.json_dict_optional_str(body, 'subtype', err)
    result.uuid              = base.json_dict_optional_str(body, 'notificationUUID', err)

    data = base.json_dict_optional_obj(body, 'data', err)
    if data is not None:
        result.environment = base.json_dict_optional_str(data, 'environment', err)
        result.bundle_id   = base.json_dict_optional_str(data, 'bundleId', err)

        signed_tx_info = base.json_dict_optional_str(data, 'signedTransactionInfo', err)
        if signed_tx_info:
            tx_info                   = _decode_jws_unverified(signed_tx_info, 'transaction info', err)
            result.original_tx_id     = base.json_dict_optional_str(tx_info, 'originalTransactionId', err)
            result.product_id         = base.json_dict_optional_str(tx_info, 'productId', err)
            result.expires_unix_ts_ms = base.json_dict_optional_int(tx_info, 'expiresDate', err)

        signed_renewal_info = base.json_dict_optional_str(data, 'signedRenewalInfo', err)
        if signed_renewal_info:
            renewal_info             = _decode_jws_unverified(signed_renewal_info, 'renewal info', err)
            result.auto_renew_status = base.json_dict_optional_int(renewal_info, 'autoRenewStatus', err)
            if result.original_tx_id is None:
                result.original_tx_id = base.json_dict_optional_str(renewal_info, 'originalTransactionId', err)

    if len(core.bundle_id) and result.bundle_id != core.bundle_id:
        err.msg_list.append(f'Apple notification bundle ID {result.bundle_id} does not match the configured bundle ID {core.bundle_id}')

    if err.has():
        return None
    return result

def _map_subscribed(n: AppleNotification, key: str) -> canonical.CanonicalEvent:
    result = canonical.purchased(Platform.Apple, key, expires_unix_ts_ms=n.expires_unix_ts_ms, is_test=n.is_sandbox())
    return result

def _map_did_renew(n: AppleNotification, key: str) -> canonical.CanonicalEvent:
    if n.subtype == AppleSubtype.BILLING_RECOVERY.value:
        result = canonical.recovered(Platform.Apple, key, expires_unix_ts_ms=n.expires_unix_ts_ms, is_test=n.is_sandbox())
    else:
        result = canonical.renewed(Platform.Apple, key, expires_unix_ts_ms=n.expires_unix_ts_ms, is_test=n.is_sandbox())
    return result

def _map_did_fail_to_renew(n: AppleNotification, key: str) -> canonical.CanonicalEvent:
    if n.subtype == AppleSubtype.GRACE_PERIOD.value:
        result = canonical.grace_period(Platform.Apple, key, is_test=n.is_sandbox())
    else:
        result = canonical.past_due(Platform.Apple, key, is_test=n.is_sandbox())
    return result

def _map_did_change_renewal_status(n: AppleNotification, key: str) -> canonical.CanonicalEvent:
    if n.subtype == AppleSubtype.AUTO_RENEW_DISABLED.value or n.auto_renew_status == APPLE_AUTO_RENEW_STATUS_OFF:
        result = canonical.canceled(Platform.Apple, key, cancel_at_unix_ts_ms=n.expires_unix_ts_ms, is_test=n.is_sandbox())
    else:
        result = canonical.renewal_reenabled(Platform.Apple, key, is_test=n.is_sandbox())
    return result

def _map_expired(n: AppleNotification, key: str) -> canonical.CanonicalEvent:
    return canonical.expired(Platform.Apple, key, is_test=n.is_sandbox())

def _map_refund(n: AppleNotification, key: str) -> canonical.CanonicalEvent:
    return canonical.refunded(Platform.Apple, key, is_test=n.is_sandbox())

def _map_revoke(n: AppleNotification, key: str) -> canonical.CanonicalEvent:
    return canonical.revoked(Platform.Apple, key, is_test=n.is_sandbox())

APPLE_EVENT_MAPPERS: dict[str, AppleEventMapper] = {
    AppleNotificationV2.SUBSCRIBED.value:                _map_subscribed,
    AppleNotificationV2.DID_RENEW.value:                 _map_did_renew,
    AppleNotificationV2.DID_FAIL_TO_RENEW.value:         _map_did_fail_to_renew,
    AppleNotificationV2.EXPIRED.value:                   _map_expired,
    AppleNotificationV2.GRACE_PERIOD_EXPIRED.value:      _map_expired,
    AppleNotificationV2.DID_CHANGE_RENEWAL_STATUS.value: _map_did_change_renewal_status,
    AppleNotificationV2.REFUND.value:                    _map_refund,
    AppleNotificationV2.REVOKE.value:                    _map_revoke,
}

@flask_blueprint.route(ROUTE_WEBHOOK, methods=['POST'])
def apple_webhook() -> flask.Response:
    get: server.GetJSONFromFlaskRequest = server.get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        log.error(f'Failed to parse Apple notification as JSON: {get.err_msg}')
        return server.json_error_response(400, 'Invalid request body')

    assert FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY in flask.current_app.config
    core = typing.cast(Core, flask.current_app.config[FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY])

    signed_payload = get.json.get('signedPayload')
    if not isinstance(signed_payload, str) or len(signed_payload) == 0:
        log.error(f'Apple notification had no signedPayload string: {base.safe_dump_dict_keys_or_data(get.json)}')
        return server.json_error_response(400, 'Missing signedPayload')

    err = base.ErrorSink()
    if core.signed_data_verifier:
        notification = decode_verified_notification(core.signed_data_verifier, signed_payload, err)
    else:
        notification = decode_unverified_notification(core, signed_payload, err)

    if notification is None or err.has():
        log.error(f'Rejected Apple notification: {err.build()}')
        return server.json_error_response(400, 'Invalid signed payload')

    if notification.notification_type == AppleNotificationV2.TEST.value:
        log.info(f'Apple test notification {notification.uuid} received')
        return server.json_received_response()

    mapper = APPLE_EVENT_MAPPERS.get(notification.notification_type)
    if mapper is None:
        log.info(f'Unhandled Apple notification {notification.describe()} ({notification.uuid}), acknowledging')
        return server.json_received_response()

    if not notification.original_tx_id:
        log.warning(f'Apple notification {notification.describe()} ({notification.uuid}) has no original transaction ID, acknowledging')
        return server.json_received_response()

    event = mapper(notification, notification.original_tx_id)
    try:
        _ = server.apply_canonical_event(flask.current_app, event)
    except Exception:
        log.error(f'Failed to process Apple notification {notification.describe()} ({notification.uuid}): {traceback.format_exc()}')
        return server.json_error_response(500, 'Webhook processing failed')

    return server.json_received_response()
