"""Core components of the tag-and-probe efficiency stage."""
