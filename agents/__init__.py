"""
Learning Agents - Swappable implementations of one learning contract.

- TabularQAgent: Q-learning over a shared thread-safe table
- DQNAgent: online + target networks with FIFO experience replay
- PolicyGradientAgent: REINFORCE over a softmax policy
- MovementPredictor: LSTM next-step movement model
"""

from agents.base import LearningAlgorithm, ModelLoadError
from agents.network import MLP
from agents.replay import ReplayBuffer, PrioritizedReplayBuffer, SumTree
from agents.tabular import TabularQAgent
from agents.dqn import DQNAgent
from agents.policy_gradient import PolicyGradientAgent
from agents.movement import MovementPredictor

__all__ = [
    "LearningAlgorithm",
    "ModelLoadError",
    "MLP",
    "ReplayBuffer",
    "PrioritizedReplayBuffer",
    "SumTree",
    "TabularQAgent",
    "DQNAgent",
    "PolicyGradientAgent",
    "MovementPredictor",
]
