"""UCI configuration directory synchronized with a publish/subscribe bus.

Layout:
    uci/
        <file>                      # UCI text: config / option / list
    uci_backup/
        <file>.<epoch-ms>.backup    # copy taken before every overwrite
    uci_uuid_mapping.json           # "<file>:<type>:<name|lineN>" -> uuid

Bus addresses:
    config/<file>/<type>/<uuid>     retained section state (empty = deleted)
    system/status                   retained lifecycle events
    commands/edit|reload|validate   inbound commands
    commands/response/<requestId>   acknowledgements

Every section keeps its uuid across restarts and external edits: a uuid
embedded in the file wins, otherwise the registry entry for the section's
structural key is reused.
"""

from ucibus.acl import AccessControl, AccessRule, Caller, authorize, topic_matches
from ucibus.bus import LocalBus, Message
from ucibus.client import CommandClient
from ucibus.codec import parse, serialize, validate
from ucibus.config import UciBusConfig, init_config, load_config
from ucibus.engine import SyncEngine
from ucibus.models import ConfigFile, Section
from ucibus.registry import IdentityRegistry

__all__ = [
    "AccessControl",
    "AccessRule",
    "Caller",
    "CommandClient",
    "ConfigFile",
    "IdentityRegistry",
    "LocalBus",
    "Message",
    "Section",
    "SyncEngine",
    "UciBusConfig",
    "authorize",
    "init_config",
    "load_config",
    "parse",
    "serialize",
    "topic_matches",
    "validate",
]
