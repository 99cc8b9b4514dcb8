"""
Viewer core for archived Slack-style workspace exports.
"""
