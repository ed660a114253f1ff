"""Event-driven architecture components.

The bus carries outbound notifications to subscribers; ``inbound`` holds the
closed set of events applied by the Session Manager.
"""

from .bus import Event, EventBus

__all__ = ["EventBus", "Event"]
