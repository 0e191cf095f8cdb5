from vasa.services.mem0_service import Mem0Service
from vasa.services.openai_service import OpenAIService
from vasa.services.elevenlabs_service import ElevenLabsService

__all__ = [
    'Mem0Service',
    'OpenAIService',
    'ElevenLabsService',
]
