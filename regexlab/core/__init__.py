"""
core: constants, configuration, error taxonomy, structured logging and the
engine lifecycle state machine.
"""
