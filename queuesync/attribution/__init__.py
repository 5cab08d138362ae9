"""Agent attribution for logged conversions."""
