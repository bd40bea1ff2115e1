'''
The canonical event is the single vocabulary the reconciler understands. Each platform module
translates its own notification into one of these events, nothing platform specific crosses this
boundary.

Events are only constructed through the per-kind functions at the bottom of this file so that an
event always carries the fields its kind needs, e.g. a status sync always carries its target
status.
'''

import enum
import dataclasses

import backend
from base import Platform, SubscriptionStatus, SubscriptionTier

class EventKind(enum.StrEnum):
    Purchased         = 'purchased'
    Renewed           = 'renewed'
    Recovered         = 'recovered'
    PaymentRecovered  = 'payment_recovered'
    PastDue           = 'past_due'
    GracePeriod       = 'grace_period'
    Paused            = 'paused'
    Canceled          = 'canceled'
    RenewalReenabled  = 'renewal_reenabled'
    Expired           = 'expired'
    Refunded          = 'refunded'
    Revoked           = 'revoked'
    StatusSynced      = 'status_synced'

@dataclasses.dataclass(frozen=True)
class CanonicalEvent:
    platform:                Platform
    external_key:            str
    kind:                    EventKind
    expires_unix_ts_ms:      int | None                = None # End of the current period if known
    period_start_unix_ts_ms: int | None                = None
    auto_renewing:           bool | None               = None
    is_test:                 bool | None               = None # Sandbox/test purchase marker if the platform reports one
    tier:                    SubscriptionTier | None   = None # Purchases and recoveries only
    status:                  SubscriptionStatus | None = None # Status syncs only
    cancel_at_unix_ts_ms:    int | None                = None
    canceled_at_unix_ts_ms:  int | None                = None

    # Overrides the 'subscription.<status>' action written to the audit log
    audit_action:            str | None                = None

    def describe(self) -> str:
        result = f'{self.kind} from {self.platform}'
        if self.status is not None:
            result += f' (status={self.status})'
        if self.tier is not None:
            result += f' (tier={self.tier})'
        return result

def purchased(platform:                Platform,
              external_key:            str,
              tier:                    SubscriptionTier = backend.DEFAULT_PAID_TIER,
              expires_unix_ts_ms:      int | None       = None,
              period_start_unix_ts_ms: int | None       = None,
              auto_renewing:           bool | None      = None,
              is_test:                 bool | None      = None) -> CanonicalEvent:
    result = CanonicalEvent(platform                = platform,
                            external_key            = external_key,
                            kind                    = EventKind.Purchased,
                            tier                    = tier,
                            expires_unix_ts_ms      = expires_unix_ts_ms,
                            period_start_unix_ts_ms = period_start_unix_ts_ms,
                            auto_renewing           = auto_renewing,
                            is_test                 = is_test)
    return result

def renewed(platform: Platform, external_key: str, expires_unix_ts_ms: int | None = None, auto_renewing: bool | None = None, is_test: bool | None = None) -> CanonicalEvent:
    result = CanonicalEvent(platform           = platform,
                            external_key       = external_key,
                            kind               = EventKind.Renewed,
                            expires_unix_ts_ms = expires_unix_ts_ms,
                            auto_renewing      = auto_renewing,
                            is_test            = is_test)
    return result

def recovered(platform:           Platform,
              external_key:       str,
              tier:               SubscriptionTier = backend.DEFAULT_PAID_TIER,
              expires_unix_ts_ms: int | None       = None,
              auto_renewing:      bool | None      = None,
              is_test:            bool | None      = None) -> CanonicalEvent:
    result = CanonicalEvent(platform           = platform,
                            external_key       = external_key,
                            kind               = EventKind.Recovered,
                            tier               = tier,
                            expires_unix_ts_ms = expires_unix_ts_ms,
                            auto_renewing      = auto_renewing,
                            is_test            = is_test)
    return result

def payment_recovered(platform: Platform, external_key: str) -> CanonicalEvent:
    result = CanonicalEvent(platform=platform, external_key=external_key, kind=EventKind.PaymentRecovered)
    return result

def past_due(platform: Platform, external_key: str, expires_unix_ts_ms: int | None = None, audit_action: str | None = None, is_test: bool | None = None) -> CanonicalEvent:
    result = CanonicalEvent(platform           = platform,
                            external_key       = external_key,
                            kind               = EventKind.PastDue,
                            expires_unix_ts_ms = expires_unix_ts_ms,
                            audit_action       = audit_action,
                            is_test            = is_test)
    return result

def grace_period(platform: Platform, external_key: str, expires_unix_ts_ms: int | None = None, is_test: bool | None = None) -> CanonicalEvent:
    result = CanonicalEvent(platform           = platform,
                            external_key       = external_key,
                            kind               = EventKind.GracePeriod,
                            expires_unix_ts_ms = expires_unix_ts_ms,
                            is_test            = is_test)
    return result

def paused(platform: Platform, external_key: str, is_test: bool | None = None) -> CanonicalEvent:
    result = CanonicalEvent(platform=platform, external_key=external_key, kind=EventKind.Paused, is_test=is_test)
    return result

def canceled(platform: Platform, external_key: str, cancel_at_unix_ts_ms: int | None = None, is_test: bool | None = None) -> CanonicalEvent:
    result = CanonicalEvent(platform             = platform,
                            external_key         = external_key,
                            kind                 = EventKind.Canceled,
                            cancel_at_unix_ts_ms = cancel_at_unix_ts_ms,
                            auto_renewing        = False,
                            is_test              = is_test)
    return result

def renewal_reenabled(platform: Platform, external_key: str, is_test: bool | None = None) -> CanonicalEvent:
    result = CanonicalEvent(platform      = platform,
                            external_key  = external_key,
                            kind          = EventKind.RenewalReenabled,
                            auto_renewing = True,
                            is_test       = is_test)
    return result

def expired(platform: Platform, external_key: str, is_test: bool | None = None) -> CanonicalEvent:
    result = CanonicalEvent(platform=platform, external_key=external_key, kind=EventKind.Expired, is_test=is_test)
    return result

def refunded(platform: Platform, external_key: str, is_test: bool | None = None) -> CanonicalEvent:
    result = CanonicalEvent(platform=platform, external_key=external_key, kind=EventKind.Refunded, is_test=is_test)
    return result

def revoked(platform: Platform, external_key: str, is_test: bool | None = None) -> CanonicalEvent:
    result = CanonicalEvent(platform=platform, external_key=external_key, kind=EventKind.Revoked, is_test=is_test)
    return result

def status_synced(platform:                Platform,
                  external_key:            str,
                  status:                  SubscriptionStatus,
                  period_start_unix_ts_ms: int | None = None,
                  period_end_unix_ts_ms:   int | None = None,
                  cancel_at_unix_ts_ms:    int | None = None,
                  canceled_at_unix_ts_ms:  int | None = None) -> CanonicalEvent:
    result = CanonicalEvent(platform                = platform,
                            external_key            = external_key,
                            kind                    = EventKind.StatusSynced,
                            status                  = status,
                            period_start_unix_ts_ms = period_start_unix_ts_ms,
                            expires_unix_ts_ms      = period_end_unix_ts_ms,
                            cancel_at_unix_ts_ms    = cancel_at_unix_ts_ms,
                            canceled_at_unix_ts_ms  = canceled_at_unix_ts_ms)
    return result
