"""State layer.

Process-local bookkeeping that decides whether an extracted value needs
to be written: the last-value cache and the change detector built on it.
"""
