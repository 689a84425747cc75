from voxagent.transcription.base import SpeechToText
from voxagent.transcription.mock import ScriptedSpeechToText
from voxagent.transcription.openai import HttpSpeechToText

__all__ = ["SpeechToText", "ScriptedSpeechToText", "HttpSpeechToText"]
