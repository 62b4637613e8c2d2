"""Microsoft Teams Adaptive Card builders.

Provides the notification card sent to every recipient, plus
``{{name}}`` placeholder substitution for notification-wide custom
variables.
"""

import json
import re
from typing import Any

ADAPTIVE_CARD_SCHEMA = "http://adaptivecards.io/schemas/adaptive-card.json"
ADAPTIVE_CARD_VERSION = "1.4"

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class NotificationCards:
    """Adaptive Card builders for notification delivery."""

    @staticmethod
    def notification_card(notification) -> dict:
        """
        Build the notification Adaptive Card.

        Layout: optional header image, title, summary, author line,
        date line, and an optional "open URL" button.
        """
        body: list[dict[str, Any]] = []

        if notification.image_link:
            body.append({
                "type": "Image",
                "url": notification.image_link,
                "size": "stretch",
                "altText": notification.title,
            })

        body.append({
            "type": "TextBlock",
            "text": notification.title,
            "size": "Large",
            "weight": "Bolder",
            "wrap": True,
        })

        if notification.summary:
            body.append({
                "type": "TextBlock",
                "text": notification.summary,
                "wrap": True,
            })

        if notification.author:
            body.append({
                "type": "TextBlock",
                "text": notification.author,
                "isSubtle": True,
                "size": "Small",
                "wrap": False,
            })

        display_date = notification.sent_date or notification.created_at
        if display_date:
            body.append({
                "type": "TextBlock",
                "text": display_date.strftime("%Y-%m-%d %H:%M UTC"),
                "isSubtle": True,
                "size": "Small",
                "wrap": False,
            })

        card: dict[str, Any] = {
            "type": "AdaptiveCard",
            "$schema": ADAPTIVE_CARD_SCHEMA,
            "version": ADAPTIVE_CARD_VERSION,
            "body": body,
        }

        if notification.button_link and notification.button_title:
            card["actions"] = [{
                "type": "Action.OpenUrl",
                "title": notification.button_title,
                "url": notification.button_link,
            }]

        return card

    def build_payload(self, notification) -> str:
        """Serialize the notification card to compact JSON."""
        return json.dumps(self.notification_card(notification), separators=(",", ":"))

    @staticmethod
    def resolve_variables(card_json: str, variables: dict[str, Any] | str | None) -> str:
        """
        Replace ``{{name}}`` placeholders with custom variable values.

        ``variables`` may be a dict or its JSON text. Values are JSON-escaped
        before substitution so the card stays valid JSON. Placeholders with
        no matching variable are left as-is.
        """
        if not variables:
            return card_json
        if isinstance(variables, str):
            variables = json.loads(variables)
            if not variables:
                return card_json

        def substitute(match: re.Match) -> str:
            name = match.group(1)
            if name not in variables or variables[name] is None:
                return match.group(0)
            # Strip the surrounding quotes of the encoded string
            return json.dumps(str(variables[name]))[1:-1]

        return _PLACEHOLDER.sub(substitute, card_json)
