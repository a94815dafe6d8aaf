"""
Effect executors and the dispatch table the engine uses.
"""
from typing import Optional

import httpx

from flow_automation.effects.base import (
    EffectContext,
    EffectExecutor,
    EffectRegistry,
    EffectResult,
    FunctionExecutor,
)
from flow_automation.effects.data import set_variable_handler, transform_handler
from flow_automation.effects.http import ApiCallExecutor
from flow_automation.effects.providers import (
    AIGenerateExecutor,
    NotificationExecutor,
    Providers,
    SendEmailExecutor,
    SendMessageExecutor,
)


def default_registry(providers: Optional[Providers] = None,
                     http_client: Optional[httpx.AsyncClient] = None) -> EffectRegistry:
    """
    Build a registry with the built-in executors.

    Provider-backed subtypes are registered only when a provider is given.
    """
    providers = providers or Providers()

    registry = EffectRegistry()
    registry.register('data.transform', transform_handler)
    registry.register('data.set_variable', set_variable_handler)
    registry.register('action.api_call', ApiCallExecutor(http_client))

    if providers.send_message:
        registry.register('action.send_message', SendMessageExecutor(providers.send_message))
    if providers.send_email:
        registry.register('action.send_email', SendEmailExecutor(providers.send_email))
    if providers.generate_text:
        registry.register('ai.generate', AIGenerateExecutor(providers.generate_text))
    if providers.notify:
        registry.register('notification.send', NotificationExecutor(providers.notify))

    return registry


__all__ = [
    'EffectContext',
    'EffectExecutor',
    'EffectRegistry',
    'EffectResult',
    'FunctionExecutor',
    'Providers',
    'default_registry',
]
