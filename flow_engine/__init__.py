"""
Flow Engine — step-oriented workflow executor.

Quick start:
  from flow_engine import FlowEngine
  engine = FlowEngine(state={"qty": 12})
  engine.register_function("notify", notify)
  engine.load_flow(flow_json)
  await engine.execute()
"""
from flow_engine.executor import FlowEngine
from flow_engine.http import ALLOWED_METHODS, api_call, close_http_client, get_http_client
from flow_engine.registry import FunctionRegistry, HandlerShape, HandlerSpec
from flow_engine.state import StateBag

__all__ = [
    "FlowEngine",
    "FunctionRegistry", "HandlerShape", "HandlerSpec",
    "StateBag",
    "api_call", "get_http_client", "close_http_client", "ALLOWED_METHODS",
]
