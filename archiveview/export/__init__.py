"""
Reading, counting and threading messages from exported workspace archives.
"""
