DOMAIN = "host_gatekeeper"
CONF_BASE_URL = "base_url"
CONF_USERNAME = "username"
CONF_PASSWORD = "password"
CONF_VERIFY_SSL = "verify_ssl"
CONF_DEFAULT_BLOCKED = "default_blocked_hosts"   # comma separated, used on first run only
CONF_SYNC_ON_START = "sync_on_start"

DEFAULT_PORT = 8080
DEFAULT_SYNC_ON_START = True
DEFAULT_GLOBAL_BLOCKED = ["www.googletagmanager.com", "connect.facebook.net"]

STORAGE_VERSION = 1
STORAGE_KEY_FMT = DOMAIN + ".{entry_id}"

STATUS_BLOCKED = "blocked"
STATUS_ALLOWED = "allowed"
STATUS_PENDING = "pending"
STATUSES = (STATUS_BLOCKED, STATUS_ALLOWED, STATUS_PENDING)

ACTION_BLOCK = "block"
ACTION_ALLOW = "allow"

# Rule id layout: site ids in [1, RULE_ID_SPACE], global ids shifted by GLOBAL_RULE_OFFSET.
RULE_ID_SPACE = 1_000_000
GLOBAL_RULE_OFFSET = 2_000_000
SITE_RULE_PRIORITY = 2
GLOBAL_RULE_PRIORITY = 1

SCOPE_SITE = "site"
SCOPE_GLOBAL = "global"
SCOPE_DISABLED = "disabled_sites"

SERVICE_SAVE_SITE_DECISIONS = "save_site_decisions"
SERVICE_SAVE_GLOBAL_DECISIONS = "save_global_decisions"
SERVICE_DISABLE_SITE = "disable_site"
SERVICE_ENABLE_SITE = "enable_site"
SERVICE_RESET_SITE = "reset_site"
SERVICE_RESYNC = "resync"
SERVICE_GET_SITE_STATE = "get_site_state"
SERVICE_GET_GLOBAL_CONFIG = "get_global_config"
SERVICE_INSPECT_RULES = "inspect_rules"

EVENT_GLOBAL_CONFIG_UPDATED = f"{DOMAIN}.global_config_updated"
EVENT_SITE_CONFIG_UPDATED = f"{DOMAIN}.site_config_updated"
EVENT_SITE_TOGGLED = f"{DOMAIN}.site_toggled"
