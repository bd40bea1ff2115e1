'''
Runs the side effects of a committed subscription transition. The hooks in `POST_COMMIT_HOOKS` run
in order and each is isolated from the others: a hook that raises is logged and the next hook still
runs. Nothing here is transactional with the subscription write, a failed hook is not retried.

Only real transitions (status and/or tier changed) are dispatched, which is what keeps a redelivered
notification from running its side effects twice.
'''

import typing
import logging
import traceback
import dataclasses

import base
import backend
import collaborators
from reconciler import ReconcileResult

log = logging.Logger('DISPATCH')

SUBSCRIPTION_UPDATED_EVENT = 'subscription:updated'

@dataclasses.dataclass
class DispatchContext:
    db_path:        str
    db_path_is_uri: bool
    services:       collaborators.Collaborators
    result:         ReconcileResult
    unix_ts_ms:     int = 0

    @property
    def current(self) -> backend.SubscriptionRow:
        assert self.result.current is not None
        return self.result.current

@dataclasses.dataclass
class DispatchReport:
    ran:    list[str] = dataclasses.field(default_factory=list)
    failed: list[str] = dataclasses.field(default_factory=list)

def invalidate_user_cache(ctx: DispatchContext):
    row = ctx.current
    with backend.OpenDBAtPath(ctx.db_path, ctx.db_path_is_uri) as db:
        with base.SQLTransaction(db.sql_conn) as tx:
            users = backend.get_organization_users_tx(tx, row.organization_id)
            if not any(it.id == row.user_id for it in users):
                owner = backend.get_user_tx(tx, row.user_id)
                if owner:
                    users.append(owner)

    for user in users:
        for key in collaborators.user_cache_keys(user):
            _ = ctx.services.cache.delete(key)
    log.info(f'Invalidated cached entries of {len(users)} user(s) of organization {row.organization_id}')

def gate_staff_seats(ctx: DispatchContext):
    # NOTE: Edge triggered, staff are only toggled when the subscription enters or leaves an
    # entitled status
    previous     = ctx.result.previous
    was_entitled = previous is not None and previous.status in base.ENTITLED_STATUSES
    is_entitled  = ctx.current.status in base.ENTITLED_STATUSES
    if was_entitled == is_entitled:
        return

    organization_id = ctx.current.organization_id
    if is_entitled:
        count = ctx.services.staff.enable_all_staff(organization_id)
        log.info(f'Subscription of organization {organization_id} became entitled, {count} staff account(s) enabled')
    else:
        # NOTE: Seats stay enabled while any other subscription of the organization is entitled
        with backend.OpenDBAtPath(ctx.db_path, ctx.db_path_is_uri) as db:
            with base.SQLTransaction(db.sql_conn) as tx:
                entitled_ids = backend.get_other_entitled_subscription_ids_tx(tx, organization_id, ctx.current.id)
        if len(entitled_ids):
            log.info(f'{backend.subscription_log_label(ctx.current)} lost its entitlement ({ctx.current.status}) but organization {organization_id} is still entitled by subscription(s) {entitled_ids}, staff kept')
            return

        count = ctx.services.staff.disable_all_staff(organization_id)
        log.info(f'Subscription of organization {organization_id} lost its entitlement ({ctx.current.status}), {count} staff account(s) disabled')

def notify_organization(ctx: DispatchContext):
    row                                = ctx.current
    payload: dict[str, base.JSONValue] = {
        'status':     str(row.status),
        'tier':       str(row.tier),
        'platform':   str(row.platform),
        'cancelAt':   base.iso8601_from_unix_ts_ms(row.cancel_at_unix_ts_ms),
        'canceledAt': base.iso8601_from_unix_ts_ms(row.canceled_at_unix_ts_ms),
    }
    ctx.services.notifier.emit_to_organization(row.organization_id, SUBSCRIPTION_UPDATED_EVENT, payload)

def write_audit_log(ctx: DispatchContext):
    row = ctx.current
    with backend.OpenDBAtPath(ctx.db_path, ctx.db_path_is_uri) as db:
        with base.SQLTransaction(db.sql_conn) as tx:
            _ = backend.add_audit_log_tx(tx              = tx,
                                         organization_id = row.organization_id,
                                         user_id         = row.user_id,
                                         action          = ctx.result.audit_action,
                                         entity_type     = 'subscription',
                                         entity_id       = str(row.id),
                                         changes         = ctx.result.audit_changes,
                                         unix_ts_ms      = ctx.unix_ts_ms)

PostCommitHook: typing.TypeAlias = typing.Callable[[DispatchContext], None]

POST_COMMIT_HOOKS: list[tuple[str, PostCommitHook]] = [
    ('invalidate_user_cache', invalidate_user_cache),
    ('gate_staff_seats',      gate_staff_seats),
    ('notify_organization',   notify_organization),
    ('write_audit_log',       write_audit_log),
]

def dispatch(db_path: str, db_path_is_uri: bool, services: collaborators.Collaborators, result: ReconcileResult, unix_ts_ms: int | None = None) -> DispatchReport:
    report = DispatchReport()
    if not result.real_transition or result.current is None:
        return report

    ctx = DispatchContext(db_path        = db_path,
                          db_path_is_uri = db_path_is_uri,
                          services       = services,
                          result         = result,
                          unix_ts_ms     = unix_ts_ms if unix_ts_ms is not None else base.unix_ts_ms_now())

    for name, hook in POST_COMMIT_HOOKS:
        try:
            hook(ctx)
            report.ran.append(name)
        except Exception:
            report.failed.append(name)
            log.error(f'Post-commit hook {name} failed for {backend.subscription_log_label(ctx.current)}: {traceback.format_exc()}')

    return report
