"""
Experience Records - (state, action, reward, next_state, terminal) tuples.

Two forms coexist:
- Experience: structured, holds full state objects (tabular agents only need
  their hash)
- FlatExperience: raw numeric arrays, what the neural agents train on

Both are immutable. The only derived annotation is the TD-error used for
prioritized sampling, which produces a new record rather than mutating.
"""

from dataclasses import dataclass, replace
from typing import Optional

import numpy as np

from .state import Action, BaseState


@dataclass(frozen=True, eq=False)
class FlatExperience:
    """Experience in flattened-array form"""
    state: np.ndarray
    action: int
    reward: float
    next_state: np.ndarray
    done: bool
    td_error: Optional[float] = None

    @classmethod
    def of(cls, state, action, reward: float, next_state,
           done: bool = False) -> 'FlatExperience':
        action_index = action.index if isinstance(action, Action) else int(action)
        return cls(
            state=np.array(state, dtype=np.float64).ravel(),
            action=action_index,
            reward=float(reward),
            next_state=np.array(next_state, dtype=np.float64).ravel(),
            done=bool(done),
        )

    def action_enum(self) -> Action:
        return Action.from_index(self.action)

    def with_td_error(self, td_error: float) -> 'FlatExperience':
        return replace(self, td_error=float(td_error))


@dataclass(frozen=True)
class Experience:
    """Experience in structured form"""
    state: BaseState
    action: Action
    reward: float
    next_state: BaseState
    terminal: bool
    td_error: Optional[float] = None

    @classmethod
    def create(cls, state: BaseState, action: Action, reward: float,
               next_state: BaseState, terminal: Optional[bool] = None) -> 'Experience':
        """Build an experience; terminal defaults to the next state's own test"""
        if terminal is None:
            terminal = next_state.is_terminal()
        return cls(state=state, action=action, reward=float(reward),
                   next_state=next_state, terminal=bool(terminal))

    def flatten(self) -> FlatExperience:
        return FlatExperience(
            state=self.state.flatten().copy(),
            action=self.action.index,
            reward=self.reward,
            next_state=self.next_state.flatten().copy(),
            done=self.terminal,
            td_error=self.td_error,
        )

    def with_td_error(self, td_error: float) -> 'Experience':
        return replace(self, td_error=float(td_error))


def as_flat(experience) -> FlatExperience:
    """Accept either representation and return the flattened one"""
    if isinstance(experience, FlatExperience):
        return experience
    if isinstance(experience, Experience):
        return experience.flatten()
    raise TypeError(f"Unsupported experience type: {type(experience).__name__}")
