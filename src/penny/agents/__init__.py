from .intervention_gate import InterventionGate, calculate_allocation_drift
from .scheduler import AgentScheduler

__all__ = ['InterventionGate', 'calculate_allocation_drift', 'AgentScheduler']
