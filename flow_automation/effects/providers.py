"""
Adapter executors for external providers (messaging, email, AI, notifications).

The concrete connectors live outside the engine; each adapter receives a
provider callable and only maps node configuration to its arguments.

Usage:
    async def send_whatsapp(to, message, channel):
        ...
        return {'message_id': '...'}

    registry.register('action.send_message', SendMessageExecutor(send_whatsapp))
"""
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from flow_automation.effects.base import EffectContext, EffectExecutor, EffectResult
from flow_automation.flow_engine.nodes import ActionConfig, AIConfig, NotificationConfig
from flow_automation.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Providers:
    """Provider callables; a None entry leaves that node subtype unregistered"""
    send_message: Optional[Callable[..., Any]] = None
    send_email: Optional[Callable[..., Any]] = None
    generate_text: Optional[Callable[..., Any]] = None
    notify: Optional[Callable[..., Any]] = None


async def _call(provider: Callable[..., Any], **kwargs) -> Dict[str, Any]:
    result = provider(**kwargs)
    if inspect.isawaitable(result):
        result = await result
    if result is None:
        return {}
    if isinstance(result, dict):
        return result
    return {'result': result}


class SendMessageExecutor(EffectExecutor):
    """action.send_message - parameters: to, message, channel (default whatsapp)"""

    def __init__(self, provider: Callable[..., Any]):
        self.provider = provider

    async def execute(self, config: ActionConfig, input_data: Dict[str, Any], ctx: EffectContext) -> EffectResult:
        params = config.parameters
        to = params.get('to') or input_data.get('from')
        message = params.get('message') or params.get('text')
        if not to or not message:
            return EffectResult.failed('to and message are required', retryable=False)

        channel = params.get('channel') or 'whatsapp'
        ctx.write_log('info', f"Sending {channel} message", {'to': to})
        result = await _call(self.provider, to=to, message=message, channel=channel)

        return EffectResult.ok({
            'sent_to': to,
            'message_sent': message,
            'channel': channel,
            'sent_at': utcnow().isoformat(),
            **result,
        })


class SendEmailExecutor(EffectExecutor):
    """action.send_email - parameters: to, subject, body (or html)"""

    def __init__(self, provider: Callable[..., Any]):
        self.provider = provider

    async def execute(self, config: ActionConfig, input_data: Dict[str, Any], ctx: EffectContext) -> EffectResult:
        params = config.parameters
        to = params.get('to')
        subject = params.get('subject')
        if not to or not subject:
            return EffectResult.failed('to and subject are required', retryable=False)

        body = params.get('html') or params.get('body') or params.get('template') or ''
        ctx.write_log('info', 'Sending email', {'to': to, 'subject': subject})
        result = await _call(self.provider, to=to, subject=subject, body=body)

        return EffectResult.ok({
            'sent_to': to,
            'subject': subject,
            'sent_at': utcnow().isoformat(),
            **result,
        })


class AIGenerateExecutor(EffectExecutor):
    """
    ai.generate - sends the resolved prompt to the provider.

    contextVariables lists variable names appended to the prompt context;
    outputFormat 'json' parses the provider text as JSON.
    """

    def __init__(self, provider: Callable[..., Any]):
        self.provider = provider

    async def execute(self, config: AIConfig, input_data: Dict[str, Any], ctx: EffectContext) -> EffectResult:
        if not config.prompt:
            return EffectResult.failed('prompt is required', retryable=False)

        context = {name: ctx.variables.get(name, input_data.get(name)) for name in config.context_variables}
        result = await _call(
            self.provider,
            prompt=config.prompt,
            model=config.model,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            context=context,
        )

        text = result.get('text', result.get('result', ''))
        output = {
            'ai_response': text,
            'model_used': result.get('model', config.model),
            'generated_at': utcnow().isoformat(),
        }
        if 'tokens_used' in result:
            output['tokens_used'] = result['tokens_used']

        if config.output_format == 'json':
            try:
                output['parsed'] = json.loads(text)
            except (TypeError, ValueError):
                return EffectResult.failed('AI response is not valid JSON')

        return EffectResult.ok(output)


class NotificationExecutor(EffectExecutor):
    """notification.send - channel, title, message, recipients"""

    def __init__(self, provider: Callable[..., Any]):
        self.provider = provider

    async def execute(self, config: NotificationConfig, input_data: Dict[str, Any], ctx: EffectContext) -> EffectResult:
        if not config.message:
            return EffectResult.failed('message is required', retryable=False)

        result = await _call(
            self.provider,
            channel=config.channel,
            title=config.title,
            message=config.message,
            recipients=list(config.recipients),
        )

        return EffectResult.ok({
            'notified': list(config.recipients),
            'channel': config.channel,
            'sent_at': utcnow().isoformat(),
            **result,
        })
