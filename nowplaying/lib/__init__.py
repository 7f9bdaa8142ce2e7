"""
Shared plumbing — configuration, error taxonomy, Ok/Err results and the
ServiceBase every HTTP service inherits from.
"""
