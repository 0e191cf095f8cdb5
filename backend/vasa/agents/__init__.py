from vasa.agents.stage_classifier import Stage, classify, detect_stage

__all__ = [
    'Stage',
    'classify',
    'detect_stage',
]
