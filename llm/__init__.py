"""
LLM Package

- provider_registry: provider table, model -> provider resolution, tool schema shapes
- response_parser: LLMResponse and the reply -> action interpretation
- gateway: LLMGateway and the openai-SDK provider clients
"""
