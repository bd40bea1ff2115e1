'''
Entry point for Real-time Developer Notifications (RTDN) from the Google Play store. Google
publishes them to a Pub/Sub topic whose push subscription delivers each message to this backend as

  {"message": {"data": "<base64 JSON>", "messageId": "...", "publishTime": "..."}, "subscription": "..."}

Subscription and voided purchase notifications only carry a purchase token, the purchase is
validated through the Play Developer API (platform_google_api.py) before it is mapped to a
canonical event and reconciled. Pub/Sub redelivers any message that is not answered with a 2xx.
'''

import json
import flask
import base64
import typing
import logging
import binascii
import traceback
import dataclasses

import base
import canonical
import server
import platform_google_api
from base import Platform, json_dict_require_str, json_dict_require_int, json_dict_optional_obj, json_dict_optional_str, \
    json_dict_require_str_coerce_to_int, safe_dump_dict_keys_or_data
from platform_google_api import PlayClient, PlayClientInitResult, SubscriptionValidation, ValidationStatus
from platform_google_types import DeveloperNotification, SubscriptionNotification, VoidedPurchaseNotification, \
    OneTimeProductNotification, SubscriptionNotificationType, ProductType, RefundType

log = logging.Logger('GOOGLE')

ROUTE_WEBHOOK:                         str = '/google/webhook'
FLASK_CONFIG_PLATFORM_GOOGLE_CORE_KEY: str = 'sub_sync_backend_platform_google_core'

ERROR_MISSING_MESSAGE_DATA        = 'Missing message data'
SKIP_REASON_TEST_PURCHASE_IN_PROD = 'test_purchase_in_prod'
SKIP_REASON_REAL_PURCHASE_IN_DEV  = 'real_purchase_in_dev'

flask_blueprint = flask.Blueprint('sub-sync-backend-google', __name__)

@dataclasses.dataclass
class Core:
    package_name: str               = ''
    play_client:  PlayClient | None = None

GoogleEventMapper: typing.TypeAlias = typing.Callable[[str, SubscriptionValidation], canonical.CanonicalEvent]

def init(package_name: str, play_client_init: PlayClientInitResult) -> Core:
    match play_client_init.status:
        case platform_google_api.PlayClientInitStatus.Ok:
            log.info(f'Google Play Developer API client ready for {package_name}')
        case platform_google_api.PlayClientInitStatus.Disabled:
            log.warning(f'Google Play Developer API client disabled ({play_client_init.error}), notifications will be processed unvalidated')
        case platform_google_api.PlayClientInitStatus.Failed:
            log.error(f'{play_client_init.error}, notifications will be processed unvalidated')
    result = Core(package_name=package_name, play_client=play_client_init.client)
    return result

def equip_flask_routes(core: Core, flask_app: flask.Flask):
    flask_app.register_blueprint(flask_blueprint)
    flask_app.config[FLASK_CONFIG_PLATFORM_GOOGLE_CORE_KEY] = core

def decode_push_message_data(body: base.JSONObject, err: base.ErrorSink) -> base.JSONObject:
    result: base.JSONObject = {}
    message_err             = base.ErrorSink()
    message                 = json_dict_optional_obj(body, 'message', message_err)
    data                    = json_dict_optional_str(message, 'data', message_err) if message is not None else None
    if message_err.has() or not data:
        err.msg_list.append(ERROR_MISSING_MESSAGE_DATA)
        return result

    try:
        decoded = json.loads(base64.b64decode(data, validate=True))
    except (binascii.Error, ValueError) as e:
        err.msg_list.append(f'Message data was not base64 encoded JSON: {e}')
        return result

    if isinstance(decoded, dict):
        result = typing.cast(base.JSONObject, decoded)
    else:
        err.msg_list.append(f'Message data was not a JSON object: {base.safe_dump_arbitrary_value_or_type(decoded)}')
    return result

def parse_developer_notification(body: base.JSONObject, err: base.ErrorSink) -> DeveloperNotification:
    result                   = DeveloperNotification()
    result.version           = json_dict_require_str(body, 'version', err)
    result.package_name      = json_dict_require_str(body, 'packageName', err)
    result.event_time_millis = json_dict_require_str_coerce_to_int(body, 'eventTimeMillis', err)

    subscription     = json_dict_optional_obj(body, 'subscriptionNotification', err)
    one_time_product = json_dict_optional_obj(body, 'oneTimeProductNotification', err)
    voided_purchase  = json_dict_optional_obj(body, 'voidedPurchaseNotification', err)
    test_obj         = json_dict_optional_obj(body, 'testNotification', err)

    unique_notif_keys = (subscription is not None) + (one_time_product is not None) + (voided_purchase is not None) + (test_obj is not None)
    if unique_notif_keys == 0:
        err.msg_list.append(f'No notification in RTDN for {result.package_name}: {safe_dump_dict_keys_or_data(body)}')
    elif unique_notif_keys > 1:
        err.msg_list.append(f'Multiple notifications in RTDN for {result.package_name}: {safe_dump_dict_keys_or_data(body)}')

    if err.has():
        return result

    if subscription is not None:
        notification                        = SubscriptionNotification()
        notification.version                = json_dict_require_str(subscription, 'version', err)
        notification.purchase_token         = json_dict_require_str(subscription, 'purchaseToken', err)
        notification.raw_notification_type  = json_dict_require_int(subscription, 'notificationType', err)
        try:
            notification.notification_type = SubscriptionNotificationType(notification.raw_notification_type)
        except ValueError:
            notification.notification_type = SubscriptionNotificationType.NIL
        result.subscription_notification = notification

    elif voided_purchase is not None:
        notification                = VoidedPurchaseNotification()
        notification.purchase_token = json_dict_require_str(voided_purchase, 'purchaseToken', err)
        notification.order_id       = json_dict_require_str(voided_purchase, 'orderId', err)
        product_type                = json_dict_require_int(voided_purchase, 'productType', err)
        refund_type                 = json_dict_require_int(voided_purchase, 'refundType', err)
        if not err.has():
            try:
                notification.product_type = ProductType(product_type)
                notification.refund_type  = RefundType(refund_type)
            except ValueError:
                err.msg_list.append(f'Voided purchase had an unknown product type ({product_type}) or refund type ({refund_type})')
        result.voided_purchase_notification = notification

    elif one_time_product is not None:
        notification                         = OneTimeProductNotification()
        notification.version                 = json_dict_require_str(one_time_product, 'version', err)
        notification.notification_type       = json_dict_require_int(one_time_product, 'notificationType', err)
        notification.purchase_token          = json_dict_require_str(one_time_product, 'purchaseToken', err)
        notification.sku                     = json_dict_require_str(one_time_product, 'sku', err)
        result.one_time_product_notification = notification

    else:
        result.test_notification = True

    return result

def environment_skip_reason(deployment: base.Deployment, validation: SubscriptionValidation) -> str | None:
    """
    Test purchases must never mutate production data and real purchases must never mutate a
    development deployment. The marker is only trusted when it came from the Play Developer API.
    """
    result = None
    if validation.status == ValidationStatus.Verified:
        assert validation.data is not None
        is_production = deployment == base.Deployment.Production
        if is_production and validation.data.test_purchase:
            result = SKIP_REASON_TEST_PURCHASE_IN_PROD
        elif not is_production and not validation.data.test_purchase:
            result = SKIP_REASON_REAL_PURCHASE_IN_DEV
    return result

def _expiry(validation: SubscriptionValidation) -> int | None:
    result = validation.data.expiry_unix_ts_ms() if validation.data else None
    return result

def _is_test(validation: SubscriptionValidation) -> bool | None:
    result = validation.data.test_purchase if validation.data else None
    return result

def _auto_renewing(validation: SubscriptionValidation) -> bool | None:
    result = validation.data.auto_renewing() if validation.data else None
    return result

def _map_recovered(token: str, v: SubscriptionValidation) -> canonical.CanonicalEvent:
    return canonical.recovered(Platform.Google, token, expires_unix_ts_ms=_expiry(v), auto_renewing=_auto_renewing(v), is_test=_is_test(v))

def _map_renewed(token: str, v: SubscriptionValidation) -> canonical.CanonicalEvent:
    return canonical.renewed(Platform.Google, token, expires_unix_ts_ms=_expiry(v), auto_renewing=_auto_renewing(v), is_test=_is_test(v))

def _map_canceled(token: str, v: SubscriptionValidation) -> canonical.CanonicalEvent:
    return canonical.canceled(Platform.Google, token, cancel_at_unix_ts_ms=_expiry(v), is_test=_is_test(v))

def _map_purchased(token: str, v: SubscriptionValidation) -> canonical.CanonicalEvent:
    return canonical.purchased(Platform.Google, token, expires_unix_ts_ms=_expiry(v), auto_renewing=_auto_renewing(v), is_test=_is_test(v))

def _map_on_hold(token: str, v: SubscriptionValidation) -> canonical.CanonicalEvent:
    return canonical.past_due(Platform.Google, token, is_test=_is_test(v))

def _map_in_grace_period(token: str, v: SubscriptionValidation) -> canonical.CanonicalEvent:
    return canonical.grace_period(Platform.Google, token, expires_unix_ts_ms=_expiry(v), is_test=_is_test(v))

def _map_paused(token: str, v: SubscriptionValidation) -> canonical.CanonicalEvent:
    return canonical.paused(Platform.Google, token, is_test=_is_test(v))

def _map_revoked(token: str, v: SubscriptionValidation) -> canonical.CanonicalEvent:
    return canonical.revoked(Platform.Google, token, is_test=_is_test(v))

def _map_expired(token: str, v: SubscriptionValidation) -> canonical.CanonicalEvent:
    return canonical.expired(Platform.Google, token, is_test=_is_test(v))

def _map_voided(token: str, v: SubscriptionValidation) -> canonical.CanonicalEvent:
    return canonical.refunded(Platform.Google, token, is_test=_is_test(v))

# NOTE: Types missing from this table (price changes, deferrals, pause schedule changes, pending
# purchase cancellations) don't affect the subscription's status or tier and are acknowledged
GOOGLE_EVENT_MAPPERS: dict[SubscriptionNotificationType, GoogleEventMapper] = {
    SubscriptionNotificationType.RECOVERED:       _map_recovered,
    SubscriptionNotificationType.RESTARTED:       _map_recovered,
    SubscriptionNotificationType.RENEWED:         _map_renewed,
    SubscriptionNotificationType.CANCELED:        _map_canceled,
    SubscriptionNotificationType.PURCHASED:       _map_purchased,
    SubscriptionNotificationType.ON_HOLD:         _map_on_hold,
    SubscriptionNotificationType.IN_GRACE_PERIOD: _map_in_grace_period,
    SubscriptionNotificationType.PAUSED:          _map_paused,
    SubscriptionNotificationType.REVOKED:         _map_revoked,
    SubscriptionNotificationType.EXPIRED:         _map_expired,
}

def _validate_and_apply(core: Core, purchase_token: str, mapper: GoogleEventMapper, label: str) -> flask.Response:
    validation = platform_google_api.validate_subscription_purchase(core.play_client, purchase_token)
    if validation.status != ValidationStatus.Verified:
        log.warning(f'Could not validate {label} for {base.obfuscate_unless_unsafe(purchase_token)}, processing the push payload as is: {validation.error}')

    skip_reason = environment_skip_reason(server.deployment_from_flask_request_context(flask.current_app), validation)
    if skip_reason:
        log.info(f'Skipping {label} for {base.obfuscate_unless_unsafe(purchase_token)}: {skip_reason}')
        return server.json_received_response({'skipped': True, 'reason': skip_reason})

    event = mapper(purchase_token, validation)
    try:
        _ = server.apply_canonical_event(flask.current_app, event)
    except Exception:
        log.error(f'Failed to process {label} for {base.obfuscate_unless_unsafe(purchase_token)}: {traceback.format_exc()}')
        return server.json_error_response(500, 'Webhook processing failed')
    return server.json_received_response()

@flask_blueprint.route(ROUTE_WEBHOOK, methods=['POST'])
def google_webhook() -> flask.Response:
    get: server.GetJSONFromFlaskRequest = server.get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        log.error(f'Failed to parse Google push message as JSON: {get.err_msg}')
        return server.json_error_response(400, ERROR_MISSING_MESSAGE_DATA)

    assert FLASK_CONFIG_PLATFORM_GOOGLE_CORE_KEY in flask.current_app.config
    core = typing.cast(Core, flask.current_app.config[FLASK_CONFIG_PLATFORM_GOOGLE_CORE_KEY])

    err  = base.ErrorSink()
    data = decode_push_message_data(get.json, err)
    if err.has():
        log.error(f'Rejected Google push message: {err.build()}')
        return server.json_error_response(400, ERROR_MISSING_MESSAGE_DATA if ERROR_MISSING_MESSAGE_DATA in err.msg_list else 'Invalid message data')

    notification = parse_developer_notification(data, err)
    if err.has():
        log.error(f'Rejected Google RTDN: {err.build()}')
        return server.json_error_response(400, 'Invalid notification')

    if len(core.package_name) and notification.package_name != core.package_name:
        log.error(f'Rejected Google RTDN for package {notification.package_name}, expected {core.package_name}')
        return server.json_error_response(400, 'Package name mismatch')

    if notification.test_notification:
        log.info(f'Google test notification received for {notification.package_name}')
        return server.json_received_response({'type': 'test_notification'})

    if notification.one_time_product_notification:
        one_time = notification.one_time_product_notification
        log.info(f'Google one-time product notification {one_time.notification_type} for {one_time.sku}, ignoring')
        return server.json_received_response()

    if notification.voided_purchase_notification:
        voided = notification.voided_purchase_notification
        if voided.product_type != ProductType.SUBSCRIPTION:
            log.info(f'Google voided purchase of a {voided.product_type.name} product (order {voided.order_id}), ignoring')
            return server.json_received_response()
        return _validate_and_apply(core, voided.purchase_token, _map_voided, f'voided purchase ({voided.refund_type.name})')

    assert notification.subscription_notification is not None
    subscription = notification.subscription_notification
    mapper       = GOOGLE_EVENT_MAPPERS.get(subscription.notification_type)
    if mapper is None:
        log.info(f'Unhandled Google subscription notification type {subscription.raw_notification_type}, acknowledging')
        return server.json_received_response()

    return _validate_and_apply(core, subscription.purchase_token, mapper, f'{subscription.notification_type.name} notification')
