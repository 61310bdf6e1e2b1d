"""llmserve - chat-completions gateway in front of transformers pipelines and TGI"""

__version__ = "0.1.0"
