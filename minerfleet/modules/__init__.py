"""
minerfleet modules following black box design principles.

Each module is completely self-contained and replaceable.
"""
