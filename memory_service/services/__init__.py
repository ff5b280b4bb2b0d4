from .prompt import PromptService

__all__ = ["PromptService"]
