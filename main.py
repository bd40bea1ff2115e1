'''
Main entry point for the Subscription Sync Backend. This runs the necessary setup code like
initialising the DB, the platform integrations and the services driven after a subscription
transition before handing over control-flow to Flask.

This application has options that must be specified as environment variables (or an .INI file whose
path is given by an environment variable) because it runs directly as a flask app in a development
environment and it is also served over UWSGI for a production use-case, where the flask app is
mounted with no possibility to forward command line arguments to it.
'''

import pathlib
import os
import flask
import logging
import logging.handlers
import configparser
import sys
import dataclasses

import base
import backend
import server
import reconciler
import dispatcher
import collaborators
import platform_stripe
import platform_apple
import platform_google
import platform_google_api

log                                                = logging.Logger('SYNC_MAIN')
webhook_loggers: list[base.AsyncWebhookLogHandler] = []

# Every module level logger, handlers configured in entry_point are attached to each of them
MODULE_LOGGERS: list[logging.Logger] = [
    log,
    server.log,
    backend.log,
    reconciler.log,
    dispatcher.log,
    collaborators.log,
    platform_stripe.log,
    platform_apple.log,
    platform_google.log,
    platform_google_api.log,
]

@dataclasses.dataclass
class LogWebhook:
    enabled: bool = False
    url:     str  = ''
    name:    str  = ''

@dataclasses.dataclass
class ParsedArgs:
    ini_path:                            str                  = ''
    db_path:                             str                  = ''
    db_path_is_uri:                      bool                 = False
    log_path:                            str                  = ''
    print_tables:                        bool                 = False
    unsafe_logging:                      bool                 = False
    deployment:                          base.Deployment      = base.Deployment.Development

    with_platform_stripe:                bool                 = False
    with_platform_apple:                 bool                 = False
    with_platform_google:                bool                 = False

    log_webhooks:                        list[LogWebhook]     = dataclasses.field(default_factory=list)

    cache_redis_url:                     str                  = ''
    cache_key_prefix:                    str                  = ''
    notify_redis_url:                    str                  = ''
    notify_channel_prefix:               str                  = 'organization'

    stripe_webhook_secret:               str                  = ''
    stripe_api_key:                      str                  = ''
    stripe_pro_price_id:                 str                  = ''
    stripe_enterprise_price_id:          str                  = ''
    stripe_signature_tolerance_s:        int                  = platform_stripe.DEFAULT_SIGNATURE_TOLERANCE_S

    apple_bundle_id:                     str                  = ''
    apple_app_apple_id:                  int | None           = None
    apple_root_cert_paths:               list[str]            = dataclasses.field(default_factory=list)
    apple_enable_online_checks:          bool                 = True
    apple_sandbox_env:                   bool                 = False

    google_package_name:                 str                  = ''
    google_application_credentials_path: str                  = ''
    google_application_credentials_json: str                  = ''

def parse_deployment(value: str, err: base.ErrorSink) -> base.Deployment:
    result = base.Deployment.Development
    try:
        result = base.Deployment(value.strip().lower())
    except ValueError:
        err.msg_list.append(f'Unknown deployment "{value}", expected one of {", ".join(it.value for it in base.Deployment)}')
    return result

def parse_cert_paths(value: str) -> list[str]:
    result = [it.strip() for it in value.split(',') if len(it.strip())]
    return result

def parse_args(err: base.ErrorSink) -> ParsedArgs:
    # NOTE: Parse .INI file if present and get arguments for it
    result          = ParsedArgs()
    result.ini_path = os.getenv('SUB_SYNC_BACKEND_INI_PATH', '')
    deployment_str  = ''
    if len(result.ini_path) > 0:
        if not pathlib.Path(result.ini_path).exists():
            log.error(f'.INI config file "{result.ini_path}", was specified but does not exist/is not readable')
            sys.exit(1)

        ini_parser = configparser.ConfigParser()
        _          = ini_parser.read(filenames=result.ini_path)

        if 'base' in ini_parser:
            base_section: configparser.SectionProxy = ini_parser['base']
            result.db_path                          = base_section.get(option='db_path',                     fallback='')
            result.db_path_is_uri                   = base_section.getboolean(option='db_path_is_uri',       fallback=False)
            result.log_path                         = base_section.get(option='log_path',                    fallback='')
            result.print_tables                     = base_section.getboolean(option='print_tables',         fallback=False)
            result.unsafe_logging                   = base_section.getboolean(option='unsafe_logging',       fallback=False)
            deployment_str                          = base_section.get(option='deployment',                  fallback='')
            result.with_platform_stripe             = base_section.getboolean(option='with_platform_stripe', fallback=False)
            result.with_platform_apple              = base_section.getboolean(option='with_platform_apple',  fallback=False)
            result.with_platform_google             = base_section.getboolean(option='with_platform_google', fallback=False)

        webhook_index = 0
        while True:
            webhook_label: str = f'log_webhook.{webhook_index}'
            if not ini_parser.has_section(webhook_label):
                break

            webhook_section: configparser.SectionProxy = ini_parser[webhook_label]
            webhook_enabled: bool | None               = webhook_section.getboolean('enabled')
            webhook_url:     str | None                = webhook_section.get('url')
            webhook_name:    str | None                = webhook_section.get('name')

            if webhook_name is None:
                err.msg_list.append(f"Failed to parse webhook section {webhook_label}, missing 'name'")
            if webhook_url is None:
                err.msg_list.append(f"Failed to parse webhook section {webhook_label}, missing 'url'")
            if webhook_enabled is None:
                err.msg_list.append(f"Failed to parse webhook section {webhook_label}, missing 'enabled'")

            if webhook_name is not None and webhook_url is not None and webhook_enabled is not None:
                result.log_webhooks.append(LogWebhook(name=webhook_name, url=webhook_url, enabled=webhook_enabled))
            webhook_index += 1

        if 'cache' in ini_parser:
            cache_section: configparser.SectionProxy = ini_parser['cache']
            result.cache_redis_url                   = cache_section.get(option='redis_url',  fallback='')
            result.cache_key_prefix                  = cache_section.get(option='key_prefix', fallback='')

        if 'notify' in ini_parser:
            notify_section: configparser.SectionProxy = ini_parser['notify']
            result.notify_redis_url                   = notify_section.get(option='redis_url',      fallback='')
            result.notify_channel_prefix              = notify_section.get(option='channel_prefix', fallback=result.notify_channel_prefix)

        if result.with_platform_stripe:
            if 'stripe' in ini_parser:
                stripe_section: configparser.SectionProxy = ini_parser['stripe']
                result.stripe_webhook_secret              = stripe_section.get(option='webhook_secret',           fallback='')
                result.stripe_api_key                     = stripe_section.get(option='api_key',                  fallback='')
                result.stripe_pro_price_id                = stripe_section.get(option='pro_price_id',             fallback='')
                result.stripe_enterprise_price_id         = stripe_section.get(option='enterprise_price_id',      fallback='')
                result.stripe_signature_tolerance_s       = stripe_section.getint(option='signature_tolerance_s', fallback=result.stripe_signature_tolerance_s)
            else:
                err.msg_list.append('Platform Stripe was enabled but [stripe] section is missing')

        if result.with_platform_apple:
            if 'apple' in ini_parser:
                apple_section: configparser.SectionProxy = ini_parser['apple']
                result.apple_bundle_id                   = apple_section.get(option='bundle_id',                   fallback='')
                result.apple_app_apple_id                = apple_section.getint(option='app_apple_id',             fallback=None)
                result.apple_root_cert_paths             = parse_cert_paths(apple_section.get(option='root_cert_paths', fallback=''))
                result.apple_enable_online_checks        = apple_section.getboolean(option='enable_online_checks', fallback=True)
                result.apple_sandbox_env                 = apple_section.getboolean(option='sandbox_env',          fallback=False)
            else:
                err.msg_list.append('Platform Apple was enabled but [apple] section is missing')

        if result.with_platform_google:
            if 'google' in ini_parser:
                google_section: configparser.SectionProxy  = ini_parser['google']
                result.google_package_name                 = google_section.get(option='package_name',                 fallback='')
                result.google_application_credentials_path = google_section.get(option='application_credentials_path', fallback='')
            else:
                err.msg_list.append('Platform Google was enabled but [google] section is missing')

    # NOTE: Get arguments from environment, they override .INI values if specified
    result.db_path                             = os.getenv('SUB_SYNC_BACKEND_DB_PATH',                               result.db_path)
    result.db_path_is_uri                      = base.os_get_boolean_env('SUB_SYNC_BACKEND_DB_PATH_IS_URI',          result.db_path_is_uri)
    result.log_path                            = os.getenv('SUB_SYNC_BACKEND_LOG_PATH',                              result.log_path)
    result.print_tables                        = base.os_get_boolean_env('SUB_SYNC_BACKEND_PRINT_TABLES',            result.print_tables)
    result.unsafe_logging                      = base.os_get_boolean_env('SUB_SYNC_BACKEND_UNSAFE_LOGGING',          result.unsafe_logging)
    deployment_str                             = os.getenv('SUB_SYNC_BACKEND_DEPLOYMENT',                            deployment_str)
    result.with_platform_stripe                = base.os_get_boolean_env('SUB_SYNC_BACKEND_WITH_PLATFORM_STRIPE',    result.with_platform_stripe)
    result.with_platform_apple                 = base.os_get_boolean_env('SUB_SYNC_BACKEND_WITH_PLATFORM_APPLE',     result.with_platform_apple)
    result.with_platform_google                = base.os_get_boolean_env('SUB_SYNC_BACKEND_WITH_PLATFORM_GOOGLE',    result.with_platform_google)
    result.cache_redis_url                     = os.getenv('SUB_SYNC_BACKEND_CACHE_REDIS_URL',                       result.cache_redis_url)
    result.notify_redis_url                    = os.getenv('SUB_SYNC_BACKEND_NOTIFY_REDIS_URL',                      result.notify_redis_url)
    result.stripe_webhook_secret               = os.getenv('SUB_SYNC_BACKEND_STRIPE_WEBHOOK_SECRET',                 result.stripe_webhook_secret)
    result.stripe_api_key                      = os.getenv('SUB_SYNC_BACKEND_STRIPE_API_KEY',                        result.stripe_api_key)
    result.stripe_pro_price_id                 = os.getenv('SUB_SYNC_BACKEND_STRIPE_PRICE_PRO',                      result.stripe_pro_price_id)
    result.stripe_enterprise_price_id          = os.getenv('SUB_SYNC_BACKEND_STRIPE_PRICE_ENTERPRISE',               result.stripe_enterprise_price_id)
    result.apple_bundle_id                     = os.getenv('SUB_SYNC_BACKEND_APPLE_BUNDLE_ID',                       result.apple_bundle_id)
    result.google_package_name                 = os.getenv('SUB_SYNC_BACKEND_GOOGLE_PACKAGE_NAME',                   result.google_package_name)
    result.google_application_credentials_path = os.getenv('SUB_SYNC_BACKEND_GOOGLE_APPLICATION_CREDENTIALS_PATH',   result.google_application_credentials_path)
    result.google_application_credentials_json = os.getenv('SUB_SYNC_BACKEND_GOOGLE_APPLICATION_CREDENTIALS_JSON',   result.google_application_credentials_json)

    if len(deployment_str):
        result.deployment = parse_deployment(deployment_str, err)

    if len(result.db_path) == 0:
        err.msg_list.append('No DB path was specified, set db_path in the .INI or SUB_SYNC_BACKEND_DB_PATH')

    if result.with_platform_stripe:
        if len(result.stripe_webhook_secret) == 0:
            err.msg_list.append('Platform Stripe was enabled but webhook_secret was not specified')
        if len(result.stripe_api_key) == 0:
            log.warning('Platform Stripe was enabled without an api_key, completed checkouts cannot be resolved to a tier')

    if result.with_platform_google:
        if len(result.google_package_name) == 0:
            err.msg_list.append('Platform Google was enabled but package_name was not specified')

    if len(result.log_path) == 0:
        result.log_path = 'sub-sync-backend.log'

    return result

def make_collaborators(parsed_args: ParsedArgs) -> collaborators.Collaborators:
    cache: collaborators.Cache
    if len(parsed_args.cache_redis_url):
        cache = collaborators.RedisCache(parsed_args.cache_redis_url, key_prefix=parsed_args.cache_key_prefix)
    else:
        cache = collaborators.MemoryCache(key_prefix=parsed_args.cache_key_prefix)

    notifier: collaborators.NotificationService
    if len(parsed_args.notify_redis_url):
        notifier = collaborators.RedisNotificationService(parsed_args.notify_redis_url, channel_prefix=parsed_args.notify_channel_prefix)
    else:
        notifier = collaborators.LoggingNotificationService()

    result = collaborators.Collaborators(cache    = cache,
                                         staff    = collaborators.SQLStaffService(parsed_args.db_path, parsed_args.db_path_is_uri, cache),
                                         notifier = notifier)
    return result

def entry_point() -> flask.Flask:
    log_formatter  = base.LogFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    console_logger = logging.StreamHandler()
    console_logger.setFormatter(log_formatter)
    for it in MODULE_LOGGERS:
        it.addHandler(console_logger)

    # NOTE: Parse arguments from .INI if present and environment variables, then setup global variables
    err = base.ErrorSink()
    parsed_args: ParsedArgs = parse_args(err)
    base.UNSAFE_LOGGING     = parsed_args.unsafe_logging
    if err.has():
        log.error('Failed to startup, invalid configuration options:\n  ' + err.build())
        sys.exit(1)

    # NOTE: Setup file logger
    file_logger = logging.handlers.RotatingFileHandler(filename=parsed_args.log_path, maxBytes=64 * 1024 * 1024, backupCount=2, encoding='utf-8')
    file_logger.setFormatter(log_formatter)
    for it in MODULE_LOGGERS:
        it.addHandler(file_logger)

    # NOTE: Equip the webhook loggers if they're configured
    for webhook in parsed_args.log_webhooks:
        if webhook.enabled:
            webhook_logger = base.AsyncWebhookLogHandler(webhook_url=webhook.url, display_name=webhook.name)
            webhook_logger.setLevel(logging.WARNING)
            webhook_logger.setFormatter(log_formatter)
            webhook_loggers.append(webhook_logger)
            for it in MODULE_LOGGERS:
                it.addHandler(webhook_logger)

    # NOTE: Ensure the path is setup for writing the database
    if not parsed_args.db_path_is_uri:
        try:
            pathlib.Path(parsed_args.db_path).parent.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            log.error(f'Failed to create directory for {parsed_args.db_path}: {e}')
            sys.exit(1)

    # NOTE: Open the DB (create tables if necessary)
    db: backend.SetupDBResult = backend.setup_db(path=parsed_args.db_path, uri=parsed_args.db_path_is_uri, err=err)
    if err.has() or db.sql_conn is None:
        log.error(f'Failed to setup the DB:\n  {err.build()}')
        sys.exit(1)

    # NOTE: Dump some startup diagnostics
    info_string: str = backend.db_info_string(sql_conn=db.sql_conn, db_path=db.path, err=err)
    if err.has():
        log.error(err.build())
        sys.exit(1)

    # NOTE: Handle printing of the DB to standard out if requested
    if parsed_args.print_tables:
        base.print_db_to_stdout(db.sql_conn)
        sys.exit(1)

    result: flask.Flask = server.init(testing_mode   = False,
                                      db_path        = db.path,
                                      db_path_is_uri = parsed_args.db_path_is_uri,
                                      services       = make_collaborators(parsed_args),
                                      deployment     = parsed_args.deployment)

    # NOTE: Add flask to our loggers
    result.logger.addHandler(console_logger)
    result.logger.addHandler(file_logger)
    for it in webhook_loggers:
        result.logger.addHandler(it)

    if parsed_args.with_platform_stripe:
        stripe_core = platform_stripe.init(webhook_secret        = parsed_args.stripe_webhook_secret,
                                           api_key               = parsed_args.stripe_api_key,
                                           pro_price_id          = parsed_args.stripe_pro_price_id,
                                           enterprise_price_id   = parsed_args.stripe_enterprise_price_id,
                                           signature_tolerance_s = parsed_args.stripe_signature_tolerance_s)
        platform_stripe.equip_flask_routes(stripe_core, result)

    if parsed_args.with_platform_apple:
        apple_core = platform_apple.init(bundle_id            = parsed_args.apple_bundle_id,
                                         app_apple_id         = parsed_args.apple_app_apple_id,
                                         root_cert_paths      = parsed_args.apple_root_cert_paths,
                                         enable_online_checks = parsed_args.apple_enable_online_checks,
                                         sandbox_env          = parsed_args.apple_sandbox_env,
                                         err                  = err)
        if err.has():
            log.error(f'Failed to initialise platform Apple:\n  {err.build()}')
            sys.exit(1)
        platform_apple.equip_flask_routes(apple_core, result)

    # NOTE: The Play Developer API client is built once and shared by every request. A client that
    # could not be built does not stop the server, notifications are then processed unvalidated.
    if parsed_args.with_platform_google:
        play_client_init = platform_google_api.init_play_client(package_name     = parsed_args.google_package_name,
                                                                credentials_path = parsed_args.google_application_credentials_path,
                                                                credentials_json = parsed_args.google_application_credentials_json)
        google_core      = platform_google.init(parsed_args.google_package_name, play_client_init)
        platform_google.equip_flask_routes(google_core, result)

    startup_log  = '\n'
    startup_log += f'Subscription Sync Backend\n{info_string}\n'
    startup_log += f'  Features:\n'
    if len(parsed_args.ini_path) > 0:
        startup_log += f'    Config .INI file loaded: {parsed_args.ini_path}\n'
    if 1:
        label = ' (URI)' if parsed_args.db_path_is_uri else ''
        startup_log += f'    DB loaded from: {db.path}{label}\n'
        startup_log += f'    Logging to: {parsed_args.log_path}\n'
        startup_log += f'    Deployment: {parsed_args.deployment}\n'
        startup_log += f'    User cache: {"Redis" if len(parsed_args.cache_redis_url) else "In-memory"}\n'
        startup_log += f'    Organization notifications: {"Redis pub/sub" if len(parsed_args.notify_redis_url) else "Log only"}\n'
    if parsed_args.unsafe_logging:
        startup_log += f'    Unsafe logging enabled (this must NOT be used in production)\n'
    if parsed_args.with_platform_stripe:
        startup_log += f'    Platform: Stripe webhook handling enabled at {platform_stripe.ROUTE_WEBHOOK}\n'
    if parsed_args.with_platform_apple:
        label = 'Sandbox' if parsed_args.apple_sandbox_env else 'Production'
        startup_log += f'    Platform: {label} Apple App Store notification handling enabled at {platform_apple.ROUTE_WEBHOOK}\n'
    if parsed_args.with_platform_google:
        startup_log += f'    Platform: Google Play notification handling enabled at {platform_google.ROUTE_WEBHOOK}\n'
    for it in parsed_args.log_webhooks:
        if it.enabled:
            startup_log += f'    Webhook Logger: Enabled (display name: {it.name})\n'

    log.info(startup_log)
    for it in webhook_loggers:
        it.emit_text(f'Starting up instance: {startup_log}')

    # The flask runner/UWSGI takes over from here and runs the application for
    # us across multiple processes if necessary. We'll close our db connection
    # here. Each request we receive will open their own connection the DB.
    db.sql_conn.close()

    return result

# Flask entry point
flask_app: flask.Flask = entry_point()
