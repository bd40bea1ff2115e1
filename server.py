'''
This file is the HTTP layer shared by the platform webhook routes. It creates the Flask application,
stores the runtime configuration the routes need (DB path, collaborators, deployment) in the app
config and provides the pipeline every platform route ends with:

  platform route (verify + map) -> apply_canonical_event -> reconciler -> dispatcher -> response

The platform routes themselves are registered by platform_stripe.py, platform_apple.py and
platform_google.py through their `equip_flask_routes` functions.
'''

import flask
import typing
import logging
import traceback
import werkzeug.exceptions

import base
import backend
import reconciler
import dispatcher
import collaborators
from canonical import CanonicalEvent

log = logging.Logger('SYNC')

# Keys stored in the flask app config dictionary that can be retrieved within
# a request to get the runtime configuration for that request.
CONFIG_DB_PATH_KEY        = 'sub_sync_backend_db_path'
CONFIG_DB_PATH_IS_URI_KEY = 'sub_sync_backend_db_path_is_uri'
CONFIG_COLLABORATORS_KEY  = 'sub_sync_backend_collaborators'
CONFIG_DEPLOYMENT_KEY     = 'sub_sync_backend_deployment'

class GetJSONFromFlaskRequest:
    def __init__(self):
        self.json:    dict[str, typing.Any] = {}
        self.err_msg: str                   = ''

def json_error_response(http_status: int, msg: str) -> flask.Response:
    result        = flask.jsonify({'error': msg})
    result.status = http_status
    return result

def json_received_response(extra: dict[str, typing.Any] | None = None) -> flask.Response:
    body: dict[str, typing.Any] = {'received': True}
    if extra:
        body.update(extra)
    result = flask.jsonify(body)
    return result

def get_json_from_flask_request(request: flask.Request) -> GetJSONFromFlaskRequest:
    result: GetJSONFromFlaskRequest = GetJSONFromFlaskRequest()
    json_dict = request.get_json(force=True, silent=True)
    if json_dict is None:
        result.err_msg = 'Request body was not valid JSON'
    elif not isinstance(json_dict, dict):
        result.err_msg = 'Request body was not a JSON object'
    else:
        result.json = typing.cast(dict[str, typing.Any], json_dict)
    return result

def init(testing_mode:   bool,
         db_path:        str,
         db_path_is_uri: bool,
         services:       collaborators.Collaborators | None = None,
         deployment:     base.Deployment                    = base.Deployment.Development) -> flask.Flask:
    result                                   = flask.Flask(__name__)
    result.config['TESTING']                 = testing_mode
    result.config[CONFIG_DB_PATH_KEY]        = db_path
    result.config[CONFIG_DB_PATH_IS_URI_KEY] = db_path_is_uri
    result.config[CONFIG_COLLABORATORS_KEY]  = services if services else collaborators.make_default_collaborators(db_path, db_path_is_uri)
    result.config[CONFIG_DEPLOYMENT_KEY]     = deployment

    @result.errorhandler(Exception)
    def handle_unexpected_exception(e: Exception):  # pyright: ignore[reportUnusedFunction]
        # NOTE: Let Flask render its own HTTP errors (404, 405, ...)
        if isinstance(e, werkzeug.exceptions.HTTPException):
            return e
        log.error(f'Unhandled exception for {flask.request.method} {flask.request.path}: {traceback.format_exc()}')
        return json_error_response(500, 'Webhook processing failed')

    return result

def open_db_from_flask_request_context(flask_app: flask.Flask) -> backend.OpenDBAtPath:
    assert CONFIG_DB_PATH_KEY        in flask_app.config
    assert CONFIG_DB_PATH_IS_URI_KEY in flask_app.config
    db_path        = typing.cast(str, flask_app.config[CONFIG_DB_PATH_KEY])
    db_path_is_uri = typing.cast(bool, flask_app.config[CONFIG_DB_PATH_IS_URI_KEY])
    result         = backend.OpenDBAtPath(db_path, db_path_is_uri)
    return result

def deployment_from_flask_request_context(flask_app: flask.Flask) -> base.Deployment:
    result = typing.cast(base.Deployment, flask_app.config.get(CONFIG_DEPLOYMENT_KEY, base.Deployment.Development))
    return result

def dispatch_result(flask_app: flask.Flask, result: reconciler.ReconcileResult) -> dispatcher.DispatchReport:
    services = typing.cast(collaborators.Collaborators, flask_app.config[CONFIG_COLLABORATORS_KEY])
    report   = dispatcher.dispatch(db_path        = typing.cast(str, flask_app.config[CONFIG_DB_PATH_KEY]),
                                   db_path_is_uri = typing.cast(bool, flask_app.config[CONFIG_DB_PATH_IS_URI_KEY]),
                                   services       = services,
                                   result         = result)
    return report

def apply_canonical_event(flask_app: flask.Flask, event: CanonicalEvent) -> reconciler.ReconcileResult:
    """
    Reconcile the event against the DB and, once the transaction has committed, run the side
    effects of the transition if there was one. Database errors propagate so the route answers 500
    and the platform redelivers the notification.
    """
    with open_db_from_flask_request_context(flask_app) as db:
        result = reconciler.reconcile(db.sql_conn, event)

    if result.real_transition:
        _ = dispatch_result(flask_app, result)
    return result

def apply_checkout_binding(flask_app: flask.Flask, binding: reconciler.CheckoutBinding) -> reconciler.ReconcileResult:
    with open_db_from_flask_request_context(flask_app) as db:
        result = reconciler.bind_checkout(db.sql_conn, binding)

    if result.real_transition:
        _ = dispatch_result(flask_app, result)
    return result
