'''
Type definitions for data structures used in the Google APIs: the Real-time Developer Notification
(RTDN) delivered through Pub/Sub and the fields of the Play Developer API's SubscriptionPurchaseV2
that this backend reads.
'''

import dataclasses
import traceback
import typing
from enum import IntEnum, StrEnum
import typing_extensions

from google.protobuf.internal.well_known_types import Timestamp

import base

# RFC 3339, where generated output will always be Z-normalized and use 0, 3, 6 or 9 fractional
# digits. Offsets other than "Z" are also accepted. Examples: "2014-10-02T15:01:23Z",
# "2014-10-02T15:01:23.045123456Z" or "2014-10-02T15:01:23+05:30".
class GoogleTimestamp(Timestamp):
    def __init__(self, rfc3339_timestamp: str, err: base.ErrorSink):
        self.rfc3339:           str = rfc3339_timestamp
        self.unix_milliseconds: int = 0
        self.unix_seconds:      int = 0
        try:
            self.FromJsonString(rfc3339_timestamp)
            self.unix_milliseconds = self.ToMilliseconds()
            self.unix_seconds      = self.ToSeconds()
        except Exception:
            err.msg_list.append(f'Failed to parse timestamp "{rfc3339_timestamp}": {traceback.format_exc()}')

    @typing_extensions.override
    def __repr__(self):
        return f"GoogleTimestamp('{self.rfc3339}', unix={self.unix_seconds})"

class SubscriptionNotificationType(IntEnum):
    NIL                           = 0 # Sentinel value, never used except for zero-initialised objects
    RECOVERED                     = 1 # Recovered from account hold.
    RENEWED                       = 2 # Active subscription was renewed.
    CANCELED                      = 3 # Subscription was in/voluntarily cancelled. It is voluntary if the user cancels.
    PURCHASED                     = 4 # New subscription was purchased.
    ON_HOLD                       = 5 # Subscription has entered account hold (if enabled).
    IN_GRACE_PERIOD               = 6 # Subscription has entered grace period (if enabled).
    # User has restored their subscription from Play > Account > Subscriptions. The subscription was
    # canceled but had not expired yet when the user restores. For more information, see
    # Restorations.
    RESTARTED                     = 7
    PRICE_CHANGE_CONFIRMED        = 8  # @deprecated Subscription price change has successfully been confirmed by the user.
    DEFERRED                      = 9  # Subscription's recurrence time has been extended.
    PAUSED                        = 10 # Subscription has been paused.
    PAUSE_SCHEDULE_CHANGED        = 11 # Subscription pause schedule has been changed.
    REVOKED                       = 12 # Subscription has been revoked from the user before the expiration time.
    EXPIRED                       = 13 # Subscription has expired.
    PRICE_CHANGE_UPDATED          = 19 # Subscription item's price change details are updated.
    PENDING_PURCHASE_CANCELED     = 20 # Pending transaction of a subscription has been canceled.
    # A subscription's consent period for price step-up has begun or the user has provided consent
    # for the price step-up. This RTDN is sent only for subscriptions in a region where price
    # step-up is required.
    PRICE_STEP_UP_CONSENT_UPDATED = 22

class ProductType(IntEnum): # Product types for voided purchases
    NIL          = 0 # Sentinel value, never used except for zero-initialised objects
    SUBSCRIPTION = 1 # A subscription purchase has been voided.
    ONE_TIME     = 2 # A one-time purchase has been voided.

class RefundType(IntEnum): # Refund types for voided purchases
    NIL                           = 0 # Sentinel value, never used except for zero-initialised objects
    FULL_REFUND                   = 1
    # The purchase has been partially voided by a quantity-based partial refund, applicable only to
    # multi-quantity purchases. A purchase can be partially voided multiple times.
    QUANTITY_BASED_PARTIAL_REFUND = 2

class SubscriptionsV2State(StrEnum):
    """Subscriptions V2 subscription state types"""
    UNSPECIFIED = "SUBSCRIPTION_STATE_UNSPECIFIED"

    # Subscription was created but awaiting payment during signup. In this state, all items are
    # awaiting payment.
    PENDING = "SUBSCRIPTION_STATE_PENDING"

    # - (1) If the subscription is an auto renewing plan, at least one item is autoRenewEnabled and
    #   not expired.
    # - (2) If the subscription is a prepaid plan, at least one item is not expired.
    ACTIVE = "SUBSCRIPTION_STATE_ACTIVE"

    # The state is only available when the subscription is an auto renewing plan, all items are in a
    # paused state.
    PAUSED = "SUBSCRIPTION_STATE_PAUSED"

    # The state is only available when the subscription is an auto renewing plan, all items are in
    # a grace period.
    IN_GRACE_PERIOD = "SUBSCRIPTION_STATE_IN_GRACE_PERIOD"

    # The state is only available when the subscription is an auto renewing plan, all items are on
    # hold.
    ON_HOLD = "SUBSCRIPTION_STATE_ON_HOLD"

    # Subscription is canceled but not expired yet. The state is only available when the
    # subscription is an auto renewing plan, all items have autoRenewEnabled set to false.
    CANCELED = "SUBSCRIPTION_STATE_CANCELED"

    # All items have expiryTime in the past.
    EXPIRED = "SUBSCRIPTION_STATE_EXPIRED"

    # Pending transaction for subscription is canceled. If this pending purchase was for an existing
    # subscription, use linkedPurchaseToken to get the current state of that subscription.
    PENDING_PURCHASE_CANCELED = "SUBSCRIPTION_STATE_PENDING_PURCHASE_CANCELED"

@dataclasses.dataclass
class SubscriptionNotification:
    version:           str                          = ''
    notification_type: SubscriptionNotificationType = SubscriptionNotificationType.NIL

    # The raw type as sent, differs from `notification_type` when Google adds a type this backend
    # does not know about
    raw_notification_type: int                      = 0
    purchase_token:        str                      = ''

@dataclasses.dataclass
class VoidedPurchaseNotification:
    purchase_token: str         = ''
    order_id:       str         = ''
    product_type:   ProductType = ProductType.NIL
    refund_type:    RefundType  = RefundType.NIL

@dataclasses.dataclass
class OneTimeProductNotification:
    version:           str = ''
    notification_type: int = 0
    purchase_token:    str = ''
    sku:               str = ''

@dataclasses.dataclass
class DeveloperNotification:
    """
    The decoded `message.data` of an RTDN. Exactly one of the notification fields is set.

      https://developer.android.com/google/play/billing/rtdn-reference
    """
    version:                      str                                = ''
    package_name:                 str                                = ''
    event_time_millis:            int                                = 0
    subscription_notification:    SubscriptionNotification | None    = None
    one_time_product_notification: OneTimeProductNotification | None = None
    voided_purchase_notification: VoidedPurchaseNotification | None  = None
    test_notification:            bool                               = False

@dataclasses.dataclass
class SubscriptionV2DataLineItem:
    product_id:         str                    = ''
    expiry_time:        GoogleTimestamp | None = None
    auto_renew_enabled: bool | None            = None # None for prepaid plans

@dataclasses.dataclass
class SubscriptionV2Data:
    """Status of a user's subscription purchase, only the fields this backend reads."""
    # Item-level info for a subscription purchase. The items in the same purchase should be either
    # all with AutoRenewingPlan or all with PrepaidPlan.
    line_items:         list[SubscriptionV2DataLineItem] = dataclasses.field(default_factory=list)

    # Time at which the subscription was granted. Not set for pending subscriptions (subscription
    # was created but awaiting payment during signup).
    start_time:         GoogleTimestamp | None           = None
    subscription_state: SubscriptionsV2State             = SubscriptionsV2State.UNSPECIFIED
    latest_order_id:    str | None                       = None
    test_purchase:      bool                             = False # Set if this subscription purchase is a test purchase

    def expiry_unix_ts_ms(self) -> int | None:
        result = None
        if len(self.line_items) and self.line_items[0].expiry_time:
            result = self.line_items[0].expiry_time.unix_milliseconds
        return result

    def auto_renewing(self) -> bool | None:
        result = self.line_items[0].auto_renew_enabled if len(self.line_items) else None
        return result

def json_dict_optional_google_timestamp(d: dict[str, base.JSONValue], key: str, err: base.ErrorSink) -> GoogleTimestamp | None:
    timestamp_str = base.json_dict_optional_str(d, key, err)
    result        = GoogleTimestamp(timestamp_str, err) if timestamp_str is not None else None
    return result

def json_dict_optional_google_empty_object_bool(d: dict[str, base.JSONValue], key: str, err: base.ErrorSink) -> bool:
    """
    Google marks some flags by the presence of an empty object, e.g. `"testPurchase": {}`. Returns
    true if the key is present with an empty object.
    """
    result = False
    if key in d:
        value = d[key]
        if isinstance(value, dict) and len(value) == 0:
            result = True
        else:
            err.msg_list.append(f'Key "{key}" value was not a google empty object: "{base.safe_get_dict_value_type(d, key)}"')
    return result
