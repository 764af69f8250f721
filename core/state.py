"""
State and Action Model - What an agent sees and what it can do.

Every agent situation is reduced to a fixed-size numeric vector that the
learning algorithms consume. Two concrete encodings exist:
- FeatureState: compact self-description (position, vitals, surroundings)
- SpatialState: a census of terrain and entities around a point

Actions form a closed set of 8 symbols. For learning purposes an action is
identified only by its ordinal; targets and coordinates travel with the
executor, never with the learning core.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Dict
import math

import numpy as np


class Action(Enum):
    """Closed set of discrete agent actions (ordinal order is significant)"""
    MOVE_TO = "move_to"
    ATTACK_ENTITY = "attack_entity"
    USE_ITEM = "use_item"
    INTERACT_BLOCK = "interact_block"
    CHAT_MESSAGE = "chat_message"
    FOLLOW_PLAYER = "follow_player"
    FLEE_FROM = "flee_from"
    IDLE = "idle"

    @property
    def index(self) -> int:
        return _ACTION_ORDER.index(self)

    @classmethod
    def from_index(cls, index: int) -> 'Action':
        if not 0 <= int(index) < len(_ACTION_ORDER):
            raise ValueError(f"Action index out of range: {index}")
        return _ACTION_ORDER[int(index)]


_ACTION_ORDER = list(Action)
NUM_ACTIONS = len(_ACTION_ORDER)


@dataclass(frozen=True)
class Location:
    """Immutable world position"""
    x: float
    y: float
    z: float

    def distance_to(self, other: 'Location') -> float:
        return math.sqrt((self.x - other.x) ** 2 +
                         (self.y - other.y) ** 2 +
                         (self.z - other.z) ** 2)

    def chunk(self) -> Tuple[int, int]:
        """16-block spatial cell containing this location"""
        return (int(math.floor(self.x)) >> 4, int(math.floor(self.z)) >> 4)


class BaseState(ABC):
    """Contract every state encoding satisfies"""

    @abstractmethod
    def flatten(self) -> np.ndarray:
        ...

    @abstractmethod
    def is_terminal(self) -> bool:
        ...

    def size(self) -> int:
        return int(self.flatten().shape[0])

    def copy(self) -> 'BaseState':
        # Frozen value types can be shared safely
        return self

    def state_key(self) -> int:
        """Stable 64-bit identity of the flattened vector, used by Q-tables"""
        return state_key(self.flatten())


def state_key(vector) -> int:
    values = tuple(round(float(v), 6) for v in np.asarray(vector).ravel())
    return hash(values) & 0xFFFFFFFFFFFFFFFF


def check_state_size(vector, expected: int) -> np.ndarray:
    """Coerce to a 1-D float vector and reject size mismatches"""
    if vector is None:
        raise ValueError("State vector is required")
    arr = np.asarray(vector, dtype=np.float64).ravel()
    if arr.shape[0] != expected:
        raise ValueError(
            f"State size mismatch: expected {expected}, got {arr.shape[0]}")
    return arr


FEATURE_STATE_SIZE = 10
SPATIAL_STATE_SIZE = 5


@dataclass(frozen=True)
class FeatureState(BaseState):
    """Compact self-description of an agent"""
    location: Location
    health: float
    hunger: float = 20.0
    time_of_day: float = 0.0
    light_level: float = 15.0
    weather: str = "clear"
    nearby_entities: Tuple[str, ...] = ()
    inventory: Tuple[str, ...] = ()

    def flatten(self) -> np.ndarray:
        return np.array([
            self.location.x,
            self.location.y,
            self.location.z,
            self.health,
            self.hunger,
            self.time_of_day,
            self.light_level,
            1.0 if self.weather == "clear" else 0.0,
            float(len(self.nearby_entities)),
            float(len(self.inventory)),
        ], dtype=np.float64)

    def size(self) -> int:
        return FEATURE_STATE_SIZE

    def is_terminal(self) -> bool:
        return self.health <= 0


@dataclass(frozen=True)
class SpatialState(BaseState):
    """Terrain and entity census around a center point"""
    center: Location
    terrain: Tuple[Tuple[Tuple[int, int, int], str], ...] = ()
    entities: Tuple[str, ...] = ()

    @classmethod
    def from_census(cls, center: Location, terrain: Dict[Tuple[int, int, int], str],
                    entities=()) -> 'SpatialState':
        return cls(center=center,
                   terrain=tuple(sorted(terrain.items())),
                   entities=tuple(entities))

    def flatten(self) -> np.ndarray:
        return np.array([
            self.center.x,
            self.center.y,
            self.center.z,
            float(len(self.terrain)),
            float(len(self.entities)),
        ], dtype=np.float64)

    def size(self) -> int:
        return SPATIAL_STATE_SIZE

    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True)
class VectorState(BaseState):
    """A state that already arrives as a flat vector"""
    values: Tuple[float, ...]
    terminal: bool = False

    @classmethod
    def of(cls, values, terminal: bool = False) -> 'VectorState':
        arr = np.asarray(values, dtype=np.float64).ravel()
        if arr.shape[0] == 0:
            raise ValueError("State vector must not be empty")
        return cls(values=tuple(float(v) for v in arr), terminal=terminal)

    def flatten(self) -> np.ndarray:
        return np.array(self.values, dtype=np.float64)

    def size(self) -> int:
        return len(self.values)

    def is_terminal(self) -> bool:
        return self.terminal
