from importlib import import_module

__all__ = [
    "MessageBroker",
    "RetryController",
    "HeartbeatReporter",
    "AdmissionController",
    "AIConfigService",
    "LLMClient",
]

_LAZY_EXPORTS = {
    "MessageBroker": ("services.broker", "MessageBroker"),
    "RetryController": ("services.retry_controller", "RetryController"),
    "HeartbeatReporter": ("services.heartbeat", "HeartbeatReporter"),
    "AdmissionController": ("services.rate_limiter", "AdmissionController"),
    "AIConfigService": ("services.ai_config", "AIConfigService"),
    "LLMClient": ("services.llm", "LLMClient"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
