"""
Automation Nodes
Email, Slack, Zapier and Power Automate actions
"""
from typing import Dict, Any, Optional

from pydantic import Field, field_validator

from ..errors import ExternalFailure
from ..node_base import ExecutionContext, NodeProperties, PortSpec
from .external import ExternalServiceNode
from ....utils.logger import get_logger

logger = get_logger(__name__)


class AutomationProperties(NodeProperties):
    # Exhausted transient failures fail the node instead of reporting status=false
    fail_on_error: bool = Field(False, alias="failOnError")


class AutomationNode(ExternalServiceNode):
    """
    Base class for automation actions

    A send that still fails transiently on the final attempt is not fatal:
    the node succeeds with status=false and no primary output. Rejections
    (non-transient) always fail the node.
    """

    # Output port carrying the provider's response
    PRIMARY_OUTPUT: Optional[str] = None

    async def perform(self, inputs: Dict[str, Any], context: ExecutionContext) -> Any:
        raise NotImplementedError

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        try:
            response = await self.perform(inputs, context)
        except ExternalFailure as e:
            if self.props.fail_on_error:
                raise
            logger.warning(f"Node {self.node_id} ({self.node_type}) gave up, reporting status=false: {e}")
            outputs: Dict[str, Any] = {'status': False}
            if self.PRIMARY_OUTPUT:
                outputs[self.PRIMARY_OUTPUT] = None
            return outputs

        if self.PRIMARY_OUTPUT is None:
            return {'status': bool(response)}
        return {self.PRIMARY_OUTPUT: response, 'status': True}


class EmailProperties(AutomationProperties):
    smtp_server: str = Field("smtp.gmail.com", alias="smtpServer")
    port: int = 587
    enable_ssl: bool = Field(True, alias="enableSsl")

    @field_validator("smtp_server")
    @classmethod
    def _server_required(cls, v: str) -> str:
        if not v:
            raise ValueError("SMTP server is required")
        return v

    @field_validator("port")
    @classmethod
    def _port_range(cls, v: int) -> int:
        if v < 1 or v > 65535:
            raise ValueError("Valid port number is required")
        return v


class EmailNode(AutomationNode):
    """
    Sends an email via SMTP

    Inputs:
        to, subject, body: Message fields (fall back to properties of the same name)

    Outputs:
        status: True if the provider accepted the message
    """

    INPUTS = [
        PortSpec("to", "string", "To Address"),
        PortSpec("subject", "string", "Subject"),
        PortSpec("body", "string", "Email Body"),
    ]
    OUTPUTS = [PortSpec("status", "boolean", "Send Status")]
    Properties = EmailProperties

    async def perform(self, inputs: Dict[str, Any], context: ExecutionContext) -> Any:
        return await self.call_with_retry(
            context, 'send_email',
            str(self.get_input_value('to', inputs, '')),
            str(self.get_input_value('subject', inputs, '')),
            str(self.get_input_value('body', inputs, '')),
            self.props.smtp_server, self.props.port, self.props.enable_ssl
        )


class SlackProperties(AutomationProperties):
    bot_token: str = Field("", alias="botToken")
    username: str = "Workflow Bot"


class SlackNode(AutomationNode):
    """Posts a message to a Slack channel"""

    INPUTS = [
        PortSpec("channel", "string", "Channel"),
        PortSpec("message", "string", "Message"),
    ]
    OUTPUTS = [
        PortSpec("messageId", "string", "Message ID"),
        PortSpec("status", "boolean", "Send Status"),
    ]
    Properties = SlackProperties
    PRIMARY_OUTPUT = "messageId"

    async def perform(self, inputs: Dict[str, Any], context: ExecutionContext) -> Any:
        return await self.call_with_retry(
            context, 'send_slack',
            str(self.get_input_value('channel', inputs, '')),
            str(self.get_input_value('message', inputs, '')),
            self.props.bot_token, self.props.username
        )


class ZapierProperties(AutomationProperties):
    webhook_url: str = Field("", alias="webhookUrl")
    method: str = "POST"


class ZapierNode(AutomationNode):
    """Triggers a Zapier webhook"""

    INPUTS = [PortSpec("data", "object", "Webhook Data")]
    OUTPUTS = [
        PortSpec("response", "object", "Webhook Response"),
        PortSpec("status", "boolean", "Send Status"),
    ]
    Properties = ZapierProperties
    PRIMARY_OUTPUT = "response"

    async def perform(self, inputs: Dict[str, Any], context: ExecutionContext) -> Any:
        return await self.call_with_retry(
            context, 'http_post',
            self.props.webhook_url, self.props.method, self.get_input_value('data', inputs, {}),
            deadline_timeout=True
        )


class PowerAutomateProperties(AutomationProperties):
    flow_url: str = Field("", alias="flowUrl")
    trigger_name: str = Field("", alias="triggerName")


class PowerAutomateNode(AutomationNode):
    """Triggers a Microsoft Power Automate flow"""

    INPUTS = [PortSpec("trigger", "object", "Trigger Data")]
    OUTPUTS = [
        PortSpec("result", "object", "Flow Result"),
        PortSpec("status", "boolean", "Send Status"),
    ]
    Properties = PowerAutomateProperties
    PRIMARY_OUTPUT = "result"

    async def perform(self, inputs: Dict[str, Any], context: ExecutionContext) -> Any:
        body = self.get_input_value('trigger', inputs, {})
        if self.props.trigger_name:
            body = {'triggerName': self.props.trigger_name, 'data': body}
        return await self.call_with_retry(context, 'http_post', self.props.flow_url, 'POST', body, deadline_timeout=True)
