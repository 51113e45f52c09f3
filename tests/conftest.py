"""
Shared fixtures for nodeflow tests
"""
import asyncio

import pytest


def make_edge(source, source_port, target, target_port):
    return {"from": {"node": source, "port": source_port}, "to": {"node": target, "port": target_port}}


def make_node(node_id, node_type, **properties):
    node = {"id": node_id, "type": node_type}
    if properties:
        node["properties"] = properties
    return node


@pytest.fixture
def edge():
    """Build an edge dict: edge("a", "value", "b", "input")"""
    return make_edge


@pytest.fixture
def node():
    """Build a node dict: node("a", "data-input", defaultValue=1)"""
    return make_node


@pytest.fixture
def engine():
    """Engine whose retries do not sleep"""
    from nodeflow.core.execution import ExecutionEngine, RetryPolicy
    return ExecutionEngine(retry_policy=RetryPolicy(base_delay=0, jitter=0))


class EchoServices:
    """Services double: AI text echoes its prompt, everything else is simulated"""

    def __init__(self):
        from nodeflow.core.services import SimulatedServices
        self._fallback = SimulatedServices()

    def __getattr__(self, name):
        return getattr(self._fallback, name)

    def process_text(self, input, model, max_tokens, temperature):
        return f"ECHO:{input}"


class SlowServices:
    """Async services double whose calls take `delay` seconds and track overlap"""

    def __init__(self, delay=0.05):
        self.delay = delay
        self.running = 0
        self.max_running = 0
        self.calls = []

    async def process_text(self, input, model, max_tokens, temperature):
        self.calls.append(input)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.running -= 1
        return f"done:{input}"


@pytest.fixture
def echo_services():
    return EchoServices()


@pytest.fixture
def slow_services():
    return SlowServices
