"""
Agent Learning Core - Shared building blocks

- State/Action model: fixed-size numeric states, 8 discrete actions
- Experience records in structured and flattened form
- Exploration policies (fixed and adaptive epsilon-greedy)
- Thread-safe shared Q-value table
- Multi-factor reward model
- Configuration with clamping and validation
"""

from .state import (
    Action, NUM_ACTIONS, Location, BaseState, FeatureState, SpatialState,
    VectorState, check_state_size, state_key,
)
from .experience import Experience, FlatExperience, as_flat
from .exploration import EpsilonGreedyPolicy, AdaptiveEpsilonPolicy
from .qtable import QTable
from .reward import RewardModel, RewardOutcome, RewardBreakdown, GOAL_MULTIPLIERS
from .config import (
    LearningConfig, RewardWeights, RewardValues, GAConfig, ValidationConfig,
    ConfigError,
)

__all__ = [
    'Action',
    'NUM_ACTIONS',
    'Location',
    'BaseState',
    'FeatureState',
    'SpatialState',
    'VectorState',
    'check_state_size',
    'state_key',
    'Experience',
    'FlatExperience',
    'as_flat',
    'EpsilonGreedyPolicy',
    'AdaptiveEpsilonPolicy',
    'QTable',
    'RewardModel',
    'RewardOutcome',
    'RewardBreakdown',
    'GOAL_MULTIPLIERS',
    'LearningConfig',
    'RewardWeights',
    'RewardValues',
    'GAConfig',
    'ValidationConfig',
    'ConfigError',
]
