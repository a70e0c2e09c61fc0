from __future__ import annotations

DOMAIN = "jobledger"

CONF_SYNC_BASE_URL = "sync_base_url"
CONF_SYNC_API_KEY = "sync_api_key"
CONF_SYNC_INTERVAL = "sync_interval"
CONF_SYNC_TIMEOUT = "sync_timeout"

ENV_SYNC_BASE_URL = "JOBLEDGER_SYNC_BASE_URL"
ENV_SYNC_API_KEY = "JOBLEDGER_SYNC_API_KEY"

DEFAULT_SYNC_INTERVAL = 10
DEFAULT_SYNC_TIMEOUT = 30
MIN_SYNC_INTERVAL = 5

# Workspace id used for records created before a workspace is linked.
LOCAL_WORKSPACE_ID = "local"

ROLE_OWNER = "owner"
ROLE_MEMBER = "member"

ITEM_REMOVED_LABEL = "item removed"
