from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List


Callback = Callable[[str, dict], None]


@dataclass
class Subscription:
    connection_id: str
    destination: str
    callback: Callback

    def deliver(self, payload: dict) -> None:
        self.callback(self.destination, payload)


class SubscriptionHub:
    """Registers destination subscriptions and fans payloads out to all listeners."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, connection_id: str, destination: str, callback: Callback) -> Subscription:
        for existing in self._subscriptions.get(destination, []):
            if existing.connection_id == connection_id:
                return existing
        subscription = Subscription(connection_id=connection_id, destination=destination, callback=callback)
        self._subscriptions.setdefault(destination, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.destination)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.destination, None)

    def broadcast(self, destination: str, payload: dict) -> int:
        subscriptions = list(self._subscriptions.get(destination, []))
        for subscription in subscriptions:
            subscription.deliver(payload)
        return len(subscriptions)

    def send_to_user(self, username: str, queue: str, payload: dict) -> int:
        return self.broadcast(user_destination(username, queue), payload)


def user_destination(username: str, queue: str) -> str:
    return f"/user/{username}/queue/{queue}"
