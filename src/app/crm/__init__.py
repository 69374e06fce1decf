"""School CRM deal pipeline.

Pipelines and stages (registry), deals and their transition history
(repository, history), the transition engine that moves deals and keeps
contact profiles in step (engine, profiles, enrollment), and the Kanban
board projection with its optimistic client (board, client).
"""
