"""Command palette providers for core app features."""

from __future__ import annotations

import inspect

from textual.command import DiscoveryHit, Hit, Hits, Provider
from textual.types import IgnoreReturnCallbackType

from .models import ManualOrigin
from .orchestrator import Orchestrator


class ProfileSelectProvider(Provider):
    """Expose stored profiles to the command palette."""

    async def search(self, query: str) -> Hits:
        orchestrator = self._orchestrator
        if orchestrator is None:
            return
        matcher = self.matcher(query)
        for profile in orchestrator.state.profiles:
            match = matcher.match(profile.label)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=f"Select profile: {matcher.highlight(profile.label)}",
                    command=self._build_callback(profile.id),
                    help="Use this profile for the next connection.",
                )

    async def discover(self) -> Hits:
        orchestrator = self._orchestrator
        if orchestrator is None:
            return
        for profile in orchestrator.state.profiles:
            yield DiscoveryHit(
                display=f"Select profile: {profile.label}",
                command=self._build_callback(profile.id),
                help="Use this profile for the next connection.",
            )

    @property
    def _orchestrator(self) -> Orchestrator | None:
        orchestrator = getattr(self.app, "orchestrator", None)
        if isinstance(orchestrator, Orchestrator):
            return orchestrator
        return None

    def _build_callback(self, profile_id: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            selector = getattr(self.app, "select_profile", None)
            if selector is None:
                return
            selector(profile_id)

        return _run


class SubscriptionRefreshProvider(Provider):
    """Expose per-subscription and bulk refresh actions."""

    _ALL_LABEL = "Refresh all subscriptions"

    async def search(self, query: str) -> Hits:
        orchestrator = self._orchestrator
        if orchestrator is None:
            return
        matcher = self.matcher(query)
        score = matcher.match(self._ALL_LABEL)
        if score > 0:
            yield Hit(
                score=score,
                match_display=matcher.highlight(self._ALL_LABEL),
                command=self._build_callback(None),
                help="Trigger Ctrl+R equivalent refresh.",
            )
        for subscription in orchestrator.state.subscriptions:
            label = f"Refresh subscription: {subscription.label}"
            match = matcher.match(label)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=matcher.highlight(label),
                    command=self._build_callback(subscription.id),
                    help=subscription.url,
                )

    async def discover(self) -> Hits:
        orchestrator = self._orchestrator
        if orchestrator is None:
            return
        yield DiscoveryHit(
            display=self._ALL_LABEL,
            command=self._build_callback(None),
            help="Trigger Ctrl+R equivalent refresh.",
        )

    @property
    def _orchestrator(self) -> Orchestrator | None:
        orchestrator = getattr(self.app, "orchestrator", None)
        if isinstance(orchestrator, Orchestrator):
            return orchestrator
        return None

    def _build_callback(self, subscription_id: str | None) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            orchestrator = self._orchestrator
            if orchestrator is None:
                return
            if subscription_id is None:
                await orchestrator.refresh_all()
            else:
                await orchestrator.refresh_subscription(subscription_id)

        return _run


class ProfileManageProvider(Provider):
    """Expose profile creation, editing and removal."""

    _NEW_LABEL = "New profile"

    async def search(self, query: str) -> Hits:
        orchestrator = self._orchestrator
        if orchestrator is None:
            return
        matcher = self.matcher(query)
        for display, callback, help_text in self._commands(orchestrator):
            match = matcher.match(display)
            if match > 0:
                yield Hit(score=match, match_display=matcher.highlight(display), command=callback, help=help_text)

    async def discover(self) -> Hits:
        orchestrator = self._orchestrator
        if orchestrator is None:
            return
        for display, callback, help_text in self._commands(orchestrator):
            yield DiscoveryHit(display=display, command=callback, help=help_text)

    def _commands(self, orchestrator: Orchestrator) -> list[tuple[str, IgnoreReturnCallbackType, str]]:
        commands = [(self._NEW_LABEL, self._build_callback("new_profile"), "Open the editor for a new profile.")]
        for profile in orchestrator.state.profiles:
            if not isinstance(profile.origin, ManualOrigin):
                continue
            commands.append(
                (
                    f"Edit profile: {profile.label}",
                    self._build_callback("edit_profile", profile.id),
                    "Change the URI or label of this profile.",
                )
            )
            commands.append(
                (
                    f"Delete profile: {profile.label}",
                    self._build_callback("delete_profile", profile.id),
                    "Remove this manually added profile.",
                )
            )
        return commands

    @property
    def _orchestrator(self) -> Orchestrator | None:
        orchestrator = getattr(self.app, "orchestrator", None)
        if isinstance(orchestrator, Orchestrator):
            return orchestrator
        return None

    def _build_callback(self, action: str, *args: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            handler = getattr(self.app, action, None)
            if handler is None:
                return
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

        return _run


class SubscriptionManageProvider(Provider):
    """Expose subscription removal."""

    async def search(self, query: str) -> Hits:
        orchestrator = self._orchestrator
        if orchestrator is None:
            return
        matcher = self.matcher(query)
        for subscription in orchestrator.state.subscriptions:
            label = f"Delete subscription: {subscription.label}"
            match = matcher.match(label)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=matcher.highlight(label),
                    command=self._build_callback(subscription.id),
                    help="Remove this feed and every profile it provides.",
                )

    async def discover(self) -> Hits:
        orchestrator = self._orchestrator
        if orchestrator is None:
            return
        for subscription in orchestrator.state.subscriptions:
            yield DiscoveryHit(
                display=f"Delete subscription: {subscription.label}",
                command=self._build_callback(subscription.id),
                help="Remove this feed and every profile it provides.",
            )

    @property
    def _orchestrator(self) -> Orchestrator | None:
        orchestrator = getattr(self.app, "orchestrator", None)
        if isinstance(orchestrator, Orchestrator):
            return orchestrator
        return None

    def _build_callback(self, subscription_id: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            remover = getattr(self.app, "delete_subscription", None)
            if remover is None:
                return
            await remover(subscription_id)

        return _run


__all__ = [
    "ProfileManageProvider",
    "ProfileSelectProvider",
    "SubscriptionManageProvider",
    "SubscriptionRefreshProvider",
]
