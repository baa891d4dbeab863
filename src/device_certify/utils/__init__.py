"""Small byte-level helpers shared by the protocol layer."""
