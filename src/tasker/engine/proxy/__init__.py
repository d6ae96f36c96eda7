"""Service proxies that perform the external calls of call frames."""

from tasker.engine.proxy.local import LocalServiceProxy
from tasker.engine.proxy.registry import ServiceName, ServiceProxy, ServiceRegistry
from tasker.engine.proxy.wrapped import WrappedServiceProxy, build_method_chain

__all__ = [
    "LocalServiceProxy",
    "ServiceName",
    "ServiceProxy",
    "ServiceRegistry",
    "WrappedServiceProxy",
    "build_method_chain",
]
