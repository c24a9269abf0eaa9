from .marathon_agent import MarathonAgent
from .milestones import build_goal, generate_milestones

__all__ = ['MarathonAgent', 'build_goal', 'generate_milestones']
