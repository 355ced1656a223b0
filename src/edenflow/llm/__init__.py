from .gateway import PROVIDER_TYPES, HttpLlmGateway, LlmGateway

__all__ = ["PROVIDER_TYPES", "HttpLlmGateway", "LlmGateway"]
