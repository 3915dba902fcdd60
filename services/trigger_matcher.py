import logging

logger = logging.getLogger(__name__)


def parse_keywords(trigger_value: str) -> list:
    """Splits a comma separated keyword list into trimmed, lowercased keywords."""
    if not trigger_value:
        return []
    keywords = [k.strip().lower() for k in trigger_value.split(",")]
    return [k for k in keywords if k]


def matches_trigger(flow, message_text: str) -> bool:
    """Evaluate if an inbound message text starts this flow"""
    if flow.trigger_type == "any_message":
        return True

    if flow.trigger_type == "keyword":
        message = (message_text or "").strip().lower()
        # Exact keyword, or keyword followed by an argument ("order 1234")
        return any(message == kw or message.startswith(kw + " ") for kw in parse_keywords(flow.trigger_value))

    return False


def find_matching_flow(flows, message_text: str):
    """
    Returns the first flow whose trigger matches, or None.
    ``flows`` must already be the active, published flows of the channel,
    ordered by priority descending: the first match wins, not the best one.
    """
    for flow in flows:
        if matches_trigger(flow, message_text):
            logger.info(f"[TriggerMatcher] Message matched flow {flow.id} ({flow.name}, trigger={flow.trigger_type})")
            return flow
    return None
