"""
Learning Configuration - Hyperparameters for every learning component.

Supports three sources:
- Plain dicts (from_dict), as components are wired together
- JSON files (save / load)
- Environment variables prefixed with RL_ (from_env)

Out-of-range numbers are clamped to safe bounds rather than rejected.
Malformed values (non-numeric where a number is expected) are fatal.
"""

from dataclasses import dataclass, field, fields, asdict
from typing import Dict, Any, Tuple, Optional
import json
import logging
import math
import os

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised for malformed configuration values"""


ALGORITHMS = ('tabular', 'dqn', 'policy_gradient', 'evolutionary')


def _coerce_number(key: str, value: Any, integer: bool = False) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{key}: expected a number, got a boolean")
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            raise ConfigError(f"{key}: expected a number, got {value!r}")
    if not isinstance(value, (int, float)):
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{key}: expected a number, got {type(value).__name__}")
    if math.isnan(value):
        raise ConfigError(f"{key}: NaN is not a valid value")
    if integer:
        if math.isinf(value):
            raise ConfigError(f"{key}: expected a finite integer")
        return int(value)
    return float(value)


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', '1', 'yes', 'on'):
        return True
    if isinstance(value, str) and value.strip().lower() in ('false', '0', 'no', 'off'):
        return False
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ConfigError(f"{key}: expected a boolean, got {value!r}")


def clamp_value(key: str, value: Any, bounds: Tuple[float, float],
                integer: bool = False):
    """Coerce value to a number and clamp it into bounds"""
    number = _coerce_number(key, value, integer)
    low, high = bounds
    clamped = max(low, min(high, number))
    if integer:
        clamped = int(clamped)
    if clamped != number:
        logger.debug(f"Config {key}={number} clamped to {clamped}")
    return clamped


def _apply(cls, data: Dict[str, Any], bounds: Dict[str, Tuple[float, float]]):
    """Build a dataclass from a dict, clamping every bounded numeric field"""
    data = data or {}
    kwargs = {}
    for f in fields(cls):
        if f.name not in data or not f.init:
            continue
        value = data[f.name]
        if f.name in bounds:
            kwargs[f.name] = clamp_value(f.name, value, bounds[f.name],
                                         integer=f.type in (int, 'int'))
        elif f.type in (bool, 'bool'):
            kwargs[f.name] = _coerce_bool(f.name, value)
        elif f.type in (float, 'float'):
            kwargs[f.name] = _coerce_number(f.name, value)
        else:
            kwargs[f.name] = value
    return cls(**kwargs)


def _clamp_fields(config):
    """Clamp every bounded field of a config dataclass in place"""
    for f in fields(config):
        if f.name in config.BOUNDS:
            setattr(config, f.name, clamp_value(f.name, getattr(config, f.name),
                                                config.BOUNDS[f.name],
                                                integer=f.type in (int, 'int')))


@dataclass
class RewardWeights:
    """Weight applied to each reward term"""
    combat: float = 1.0
    movement: float = 0.5
    survival: float = 1.5
    exploration: float = 0.3
    time: float = -0.01

    BOUNDS = {
        'combat': (-100.0, 100.0),
        'movement': (-100.0, 100.0),
        'survival': (-100.0, 100.0),
        'exploration': (-100.0, 100.0),
        'time': (-100.0, 100.0),
    }

    def __post_init__(self):
        _clamp_fields(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RewardWeights':
        return _apply(cls, data, cls.BOUNDS)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RewardValues:
    """Raw magnitudes of the individual reward events"""
    kill: float = 10.0
    damage_dealt: float = 0.1
    damage_taken: float = -0.2
    movement: float = 0.05
    movement_threshold: float = 0.1
    target_bonus: float = 0.5
    exploration: float = 0.02
    goal_completion: float = 5.0
    death: float = -15.0
    alive: float = 0.01
    high_health_bonus: float = 0.02
    low_health_penalty: float = -0.05
    idle_threshold: float = 5.0

    BOUNDS = {
        'movement_threshold': (0.0, 1000.0),
        'target_bonus': (0.0, 10.0),
        'idle_threshold': (0.0, 86400.0),
    }

    def __post_init__(self):
        _clamp_fields(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RewardValues':
        return _apply(cls, data, cls.BOUNDS)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GAConfig:
    """Genetic optimizer settings"""
    population_size: int = 50
    mutation_rate: float = 0.1
    mutation_strength: float = 0.1
    max_generations: int = 100
    elitism_rate: float = 0.1
    tournament_size: int = 3
    genome_size: int = 10
    target_fitness: float = 0.0  # 0 disables the fitness target

    BOUNDS = {
        'population_size': (2, 10000),
        'mutation_rate': (0.0, 1.0),
        'mutation_strength': (0.0, 1.0),
        'max_generations': (1, 1000000),
        'elitism_rate': (0.0, 1.0),
        'tournament_size': (1, 100),
        'genome_size': (1, 10000),
    }

    def __post_init__(self):
        _clamp_fields(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GAConfig':
        return _apply(cls, data, cls.BOUNDS)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationConfig:
    """Validation harness settings"""
    train_split: float = 0.8
    cross_validation_folds: int = 5
    min_test_samples: int = 100

    BOUNDS = {
        'train_split': (0.1, 0.9),
        'cross_validation_folds': (2, 10),
        'min_test_samples': (10, 1000000),
    }

    def __post_init__(self):
        _clamp_fields(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ValidationConfig':
        return _apply(cls, data, cls.BOUNDS)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LearningConfig:
    """Master configuration for the learning system"""
    algorithm: str = "tabular"
    state_size: int = 10
    num_actions: int = 8

    # Learning rule
    learning_rate: float = 0.1
    discount: float = 0.95
    learning_rate_decay: float = 1.0
    min_learning_rate: float = 0.01

    # Exploration
    epsilon_start: float = 0.1
    epsilon_min: float = 0.01
    epsilon_decay: float = 0.995
    adaptive_exploration: bool = False

    # Replay and networks
    batch_size: int = 32
    buffer_capacity: int = 10000
    update_target_every: int = 100
    hidden_size: int = 64
    prioritized_replay: bool = True

    # Persistence
    model_dir: str = "models"
    max_backups: int = 5
    load_on_start: bool = True
    save_on_shutdown: bool = True

    seed: Optional[int] = None

    reward_weights: RewardWeights = field(default_factory=RewardWeights)
    reward_values: RewardValues = field(default_factory=RewardValues)
    ga: GAConfig = field(default_factory=GAConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)

    BOUNDS = {
        'state_size': (1, 100000),
        'num_actions': (1, 1000),
        'learning_rate': (1e-6, 1.0),
        'discount': (0.0, 1.0),
        'learning_rate_decay': (0.0, 1.0),
        'min_learning_rate': (0.0, 1.0),
        'epsilon_start': (0.0, 1.0),
        'epsilon_min': (0.0, 1.0),
        'epsilon_decay': (0.0, 1.0),
        'batch_size': (1, 4096),
        'buffer_capacity': (1, 10000000),
        'update_target_every': (1, 10000000),
        'hidden_size': (1, 4096),
        'max_backups': (0, 1000),
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any] = None) -> 'LearningConfig':
        """Build from a mapping; nested sections may be dicts"""
        if data is not None and not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping")
        data = dict(data or {})

        nested = {
            'reward_weights': RewardWeights,
            'reward_values': RewardValues,
            'ga': GAConfig,
            'validation': ValidationConfig,
        }
        sections = {}
        for key, section_cls in nested.items():
            value = data.pop(key, None)
            if value is None:
                continue
            if isinstance(value, section_cls):
                sections[key] = value
            elif isinstance(value, dict):
                sections[key] = section_cls.from_dict(value)
            else:
                raise ConfigError(f"{key}: expected a mapping, got {type(value).__name__}")

        algorithm = data.get('algorithm', 'tabular')
        if algorithm not in ALGORITHMS:
            raise ConfigError(f"Unknown algorithm {algorithm!r}, expected one of {ALGORITHMS}")
        if 'model_dir' in data and not isinstance(data['model_dir'], str):
            raise ConfigError("model_dir: expected a string path")
        if data.get('seed') is not None:
            data['seed'] = int(_coerce_number('seed', data['seed'], integer=True))

        config = _apply(cls, data, cls.BOUNDS)
        for key, value in sections.items():
            setattr(config, key, value)
        if config.epsilon_min > config.epsilon_start:
            logger.debug(f"epsilon_min {config.epsilon_min} above epsilon_start, lowering it")
            config.epsilon_min = config.epsilon_start
        return config

    @classmethod
    def from_env(cls, prefix: str = 'RL_') -> 'LearningConfig':
        """Load scalar settings from environment variables"""
        data = {}
        for f in fields(cls):
            if f.name in ('reward_weights', 'reward_values', 'ga', 'validation'):
                continue
            env_value = os.getenv(prefix + f.name.upper())
            if env_value is not None:
                data[f.name] = env_value
        return cls.from_dict(data)

    @classmethod
    def for_tabular(cls, **overrides) -> 'LearningConfig':
        """Tabular Q-learning with adaptive exploration"""
        data = {'algorithm': 'tabular', 'learning_rate': 0.1, 'discount': 0.95,
                'epsilon_start': 0.3, 'adaptive_exploration': True}
        data.update(overrides)
        return cls.from_dict(data)

    @classmethod
    def for_deep(cls, state_size: int = 10, **overrides) -> 'LearningConfig':
        """Neural Q-learning with target network and replay"""
        data = {'algorithm': 'dqn', 'state_size': state_size, 'learning_rate': 1e-3,
                'discount': 0.99, 'epsilon_start': 1.0, 'epsilon_min': 0.01,
                'epsilon_decay': 0.995, 'batch_size': 32, 'buffer_capacity': 10000,
                'update_target_every': 100}
        data.update(overrides)
        return cls.from_dict(data)

    def algorithm_config(self) -> Dict[str, Any]:
        """Flat dict handed down to agent constructors"""
        data = self.to_dict()
        for key in ('reward_weights', 'reward_values', 'ga', 'validation'):
            data.pop(key)
        return data

    def to_dict(self) -> Dict[str, Any]:
        """Serialize configuration"""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data['reward_weights'] = self.reward_weights.to_dict()
        data['reward_values'] = self.reward_values.to_dict()
        data['ga'] = self.ga.to_dict()
        data['validation'] = self.validation.to_dict()
        return data

    def save(self, filepath: str):
        """Save configuration to file"""
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, filepath: str) -> 'LearningConfig':
        """Load configuration from file"""
        try:
            with open(filepath, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Malformed configuration file {filepath}: {e}")
        return cls.from_dict(data)
