from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Action types understood by the web and mobile drivers
DEFAULT_ACTIONS: tuple[str, ...] = (
    "navigate",
    "click",
    "type",
    "scroll",
    "wait",
    "swipe",
    "tap",
    "longPress",
)


class QLearningConfig(BaseModel):
    learning_rate: float = Field(0.1, ge=0.0, le=1.0)
    discount_factor: float = Field(0.95, ge=0.0, le=1.0)
    exploration_rate: float = Field(0.3, ge=0.0, le=1.0)
    exploration_decay: float = Field(0.995, gt=0.0, le=1.0)
    exploration_min: float = Field(0.05, ge=0.0, le=1.0)
    action_space: list[str] = Field(default_factory=lambda: list(DEFAULT_ACTIONS))


class PolicyConfig(BaseModel):
    learning_rate: float = Field(0.01, ge=0.0, le=1.0)
    critic_learning_rate: float = Field(0.1, ge=0.0, le=1.0)
    gamma: float = Field(0.99, ge=0.0, le=1.0)
    min_probability: float = Field(0.01, gt=0.0, lt=1.0)
    action_space: list[str] = Field(default_factory=lambda: list(DEFAULT_ACTIONS))


class ReplayConfig(BaseModel):
    max_size: int = Field(10000, gt=0)
    batch_size: int = Field(32, gt=0)
    priority_alpha: float = Field(0.6, ge=0.0)
    use_priority: bool = True


class RewardConfig(BaseModel):
    """Reward and penalty magnitudes used by :class:`RewardSystem`."""

    success_reward: float = 10.0
    progress_reward: float = 5.0
    neutral_reward: float = 0.0
    failure_penalty: float = -5.0
    error_penalty: float = -10.0
    stuck_penalty: float = -3.0
    efficiency_bonus: float = 2.0
    timeout_penalty: float = -8.0
    # Actions faster than this (ms) earn the efficiency bonus
    efficiency_threshold_ms: float = 2000.0


class AgentConfig(BaseModel):
    """Top-level configuration of a :class:`ReinforcementAgent`."""

    algorithm: Literal["qlearning", "policy", "hybrid"] = "qlearning"
    platform: Literal["web", "android", "ios"] = "web"
    batch_size: int = Field(32, gt=0)
    update_frequency: int = Field(10, gt=0)
    save_frequency: int = Field(100, gt=0)
    # Share of hybrid-mode decisions delegated to Q-learning
    hybrid_q_ratio: float = Field(0.3, ge=0.0, le=1.0)

    enable_database: bool = True
    database_url: str = "sqlite+aiosqlite:///learning_memory.db"
    # Log every SQL statement
    database_echo: bool = False
    persistence_timeout: float = Field(10.0, gt=0.0)
    startup_min_reward: float = 5.0
    startup_experience_limit: int = Field(500, ge=0)
    checkpoint_experience_limit: int = Field(100, ge=0)

    seed: int | None = None

    q_learning: QLearningConfig = Field(default_factory=QLearningConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    replay: ReplayConfig = Field(default_factory=ReplayConfig)
    reward: RewardConfig = Field(default_factory=RewardConfig)

    @model_validator(mode="after")
    def _normalize_database_url(self) -> "AgentConfig":
        url = self.database_url
        if url.startswith("postgresql://"):
            self.database_url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgres://"):
            self.database_url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("sqlite:///"):
            self.database_url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return self


class Settings(BaseSettings):
    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Learning agent, e.g. NAVLEARN_AGENT__ALGORITHM=hybrid or
    # NAVLEARN_AGENT__Q_LEARNING__LEARNING_RATE=0.2
    agent: AgentConfig = Field(default_factory=AgentConfig)

    model_config = SettingsConfigDict(
        env_prefix="NAVLEARN_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
