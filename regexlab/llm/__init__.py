"""
llm: on-device inference engine lifecycle and description-to-regex translation.

The controller loads a small instruct model, watches for device loss and
recovers with bounded exponential backoff before downgrading to a lighter
fallback model.
"""
