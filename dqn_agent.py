"""
DQN Agent for the trading environment.
Implements DQN / Double DQN with an optional dueling head, epsilon-greedy
exploration, experience replay and hard target-network synchronization.
"""

import logging
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

import numpy as np
import torch
import torch.nn as nn
import torch.optim as optim

from replay_memory import Experience, ReplayMemory
from rl_config import AgentConfig, ConfigurationError
from trading_env import RLReward, RLState

logger = logging.getLogger(__name__)

StateLike = Union[RLState, np.ndarray, Sequence[float]]

ACTIVATIONS = {
    'relu': nn.ReLU,
    'leaky_relu': nn.LeakyReLU,
    'tanh': nn.Tanh,
    'elu': nn.ELU,
}


def _mlp(input_size: int, hidden_layers: List[int], activation: str, dropout: float) -> nn.Sequential:
    layers: List[nn.Module] = []
    in_features = input_size
    for width in hidden_layers:
        layers.append(nn.Linear(in_features, width))
        layers.append(ACTIVATIONS[activation]())
        if dropout > 0:
            layers.append(nn.Dropout(dropout))
        in_features = width
    return nn.Sequential(*layers)


class QNetwork(nn.Module):
    """
    Fully connected Q-network.

    Architecture:
    - Input: (batch_size, state_size) flattened state vectors
    - Hidden: configurable dense stack
    - Output: Q-values of shape (batch_size, n_actions)
    """

    def __init__(
        self,
        state_size: int,
        n_actions: int,
        hidden_layers: List[int],
        activation: str = 'relu',
        dropout: float = 0.0
    ):
        super(QNetwork, self).__init__()
        self.state_size = state_size
        self.n_actions = n_actions

        self.body = _mlp(state_size, hidden_layers, activation, dropout)
        self.head = nn.Linear(hidden_layers[-1], n_actions)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.head(self.body(x))


class DuelingQNetwork(nn.Module):
    """
    Dueling Q-network.

    A shared dense trunk feeds a value stream V(s) and an advantage stream
    A(s, a), combined as Q(s, a) = V(s) + (A(s, a) - mean_a A(s, a)).
    """

    def __init__(
        self,
        state_size: int,
        n_actions: int,
        hidden_layers: List[int],
        activation: str = 'relu',
        dropout: float = 0.0
    ):
        super(DuelingQNetwork, self).__init__()
        self.state_size = state_size
        self.n_actions = n_actions

        self.body = _mlp(state_size, hidden_layers, activation, dropout)
        width = hidden_layers[-1]

        self.value_stream = nn.Sequential(
            nn.Linear(width, width),
            ACTIVATIONS[activation](),
            nn.Linear(width, 1)
        )
        self.advantage_stream = nn.Sequential(
            nn.Linear(width, width),
            ACTIVATIONS[activation](),
            nn.Linear(width, n_actions)
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = self.body(x)
        value = self.value_stream(x)  # (batch_size, 1)
        advantage = self.advantage_stream(x)  # (batch_size, n_actions)
        return value + (advantage - advantage.mean(dim=1, keepdim=True))


def build_network(state_size: int, n_actions: int, config: AgentConfig) -> nn.Module:
    network_cls = DuelingQNetwork if config.dueling_dqn else QNetwork
    return network_cls(
        state_size,
        n_actions,
        hidden_layers=list(config.hidden_layers),
        activation=config.activation,
        dropout=config.dropout,
    )


@contextmanager
def network_mode(network: nn.Module, training: bool) -> Iterator[nn.Module]:
    """Switch a network to train/eval mode and restore its previous mode on exit."""
    previous = network.training
    network.train(training)
    try:
        yield network
    finally:
        network.train(previous)


class DQNAgent:
    """
    DQN / Double DQN agent.

    Features:
    - Online and target networks with identical topology
    - Double DQN targets (argmax from online, value from target)
    - Optional dueling architecture
    - Uniform or prioritized replay
    - Multiplicative epsilon decay per completed learning update
    - Hard target sync every `target_update_frequency` completed updates
    - Adaptive learning rate with a fresh optimizer
    """

    def __init__(
        self,
        state_size: int,
        n_actions: int,
        config: Optional[AgentConfig] = None
    ):
        """
        Initialize the agent.

        Args:
            state_size: Length of the flattened state vector
            n_actions: Number of discrete actions
            config: Agent configuration (defaults if None)
        """
        self.config = config or AgentConfig()
        self.config.validate()

        if state_size <= 0 or n_actions <= 0:
            raise ConfigurationError(
                f"DQNAgent: state_size and n_actions must be positive, got {state_size}, {n_actions}"
            )

        self.state_size = state_size
        self.n_actions = n_actions
        self.gamma = self.config.discount_factor
        self.batch_size = self.config.batch_size
        self.target_update_frequency = self.config.target_update_frequency

        # Device
        if self.config.device is None:
            self.device = torch.device('cuda' if torch.cuda.is_available() else 'cpu')
        else:
            self.device = torch.device(self.config.device)

        if self.config.seed is not None:
            torch.manual_seed(self.config.seed)
        self.rng = np.random.default_rng(self.config.seed)

        # Networks
        self.online_net: Optional[nn.Module] = build_network(state_size, n_actions, self.config).to(self.device)
        self.target_net: Optional[nn.Module] = build_network(state_size, n_actions, self.config).to(self.device)
        self.target_net.load_state_dict(self.online_net.state_dict())
        self.target_net.eval()

        # Optimizer
        self.learning_rate = self.config.learning_rate
        self.optimizer: Optional[optim.Optimizer] = self._build_optimizer(self.learning_rate)
        self.loss_fn = nn.SmoothL1Loss() if self.config.loss == 'huber' else nn.MSELoss()

        # Replay memory
        self.memory = ReplayMemory(
            self.config.memory_size,
            prioritized=self.config.prioritized_replay,
            seed=self.config.seed,
        )

        # Exploration
        self.epsilon_initial = self.config.epsilon
        self.epsilon_min = self.config.epsilon_min
        self.epsilon_decay = self.config.epsilon_decay
        self.epsilon = self.config.epsilon

        # Completed learning updates (drives target sync and epsilon decay)
        self.update_steps = 0
        self.target_syncs = 0
        self.last_loss = 0.0
        self.disposed = False

        logger.info(
            f"DQNAgent: state_size={state_size}, n_actions={n_actions}, "
            f"{'dueling ' if self.config.dueling_dqn else ''}"
            f"{'double ' if self.config.double_dqn else ''}DQN on {self.device}"
        )

    def _build_optimizer(self, learning_rate: float) -> optim.Optimizer:
        params = self.online_net.parameters()
        if self.config.optimizer == 'rmsprop':
            return optim.RMSprop(params, lr=learning_rate, weight_decay=self.config.weight_decay)
        return optim.Adam(params, lr=learning_rate, weight_decay=self.config.weight_decay)

    def _require_networks(self, operation: str) -> None:
        if self.online_net is None or self.target_net is None or self.optimizer is None:
            raise ConfigurationError(
                f"DQNAgent.{operation}: networks are not initialized (agent was disposed)"
            )

    def _states_to_tensor(self, states: Sequence[StateLike]) -> torch.Tensor:
        vectors = [
            s.to_vector() if isinstance(s, RLState) else np.asarray(s, dtype=np.float32)
            for s in states
        ]
        array = np.stack(vectors).astype(np.float32)
        if array.shape[1] != self.state_size:
            raise ConfigurationError(
                f"DQNAgent: state vector has length {array.shape[1]}, expected {self.state_size}"
            )
        return torch.from_numpy(array).to(self.device)

    # ------------------------------------------------------------------
    # Acting
    # ------------------------------------------------------------------

    def q_values(self, state: StateLike) -> np.ndarray:
        """
        Online-network Q-values for a single state.

        Args:
            state: RLState or flattened state vector

        Returns:
            Array of shape (n_actions,)
        """
        self._require_networks('q_values')
        with torch.no_grad(), network_mode(self.online_net, training=False):
            state_tensor = self._states_to_tensor([state])
            return self.online_net(state_tensor).cpu().numpy()[0]

    def greedy_action(self, state: StateLike) -> int:
        """Action with the highest online Q-value."""
        return int(np.argmax(self.q_values(state)))

    def choose_action(self, state: StateLike) -> int:
        """
        Select an action with the epsilon-greedy policy.

        Args:
            state: Current state

        Returns:
            Selected action index
        """
        self._require_networks('choose_action')
        if self.rng.random() < self.epsilon:
            return int(self.rng.integers(self.n_actions))
        return self.greedy_action(state)

    def store_experience(
        self,
        state: RLState,
        action: int,
        reward: RLReward,
        next_state: RLState,
        done: bool
    ) -> None:
        """
        Store a transition in replay memory.

        Args:
            state: Current state
            action: Action taken
            reward: Structured reward received
            next_state: Next state
            done: Whether the episode terminated
        """
        self._require_networks('store_experience')
        priority = abs(reward.total) + 1e-6 if self.config.prioritized_replay else None
        self.memory.push(Experience(
            state=state,
            action=int(action),
            reward=reward,
            next_state=next_state,
            done=bool(done),
            priority=priority,
        ))

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def _target_tensor(
        self,
        batch: Sequence[Experience],
        predictions: Optional[torch.Tensor] = None
    ) -> torch.Tensor:
        """
        Target matrix for a batch.

        `predictions` is the online output the loss is taken against; untaken
        entries copy it so only the taken action carries an error. Without
        it the online network is evaluated in eval mode.
        """
        next_states = self._states_to_tensor([e.next_state for e in batch])
        actions = torch.as_tensor([e.action for e in batch], dtype=torch.long, device=self.device)
        rewards = torch.as_tensor([e.reward.total for e in batch], dtype=torch.float32, device=self.device)
        dones = torch.as_tensor([e.done for e in batch], dtype=torch.bool, device=self.device)

        with torch.no_grad(), network_mode(self.online_net, training=False):
            if predictions is None:
                states = self._states_to_tensor([e.state for e in batch])
                targets = self.online_net(states).clone()  # (batch_size, n_actions)
            else:
                targets = predictions.detach().clone()
            next_q_target = self.target_net(next_states)

            if self.config.double_dqn:
                # Online network picks the action, target network evaluates it
                next_actions = self.online_net(next_states).argmax(dim=1)
                bootstrap = next_q_target.gather(1, next_actions.unsqueeze(1)).squeeze(1)
            else:
                bootstrap = next_q_target.max(dim=1).values

            action_targets = torch.where(dones, rewards, rewards + self.gamma * bootstrap)
            targets[torch.arange(len(batch), device=self.device), actions] = action_targets

        return targets

    def compute_targets(self, batch: Sequence[Experience]) -> np.ndarray:
        """
        Build the learning target matrix for a batch.

        Only the taken action's entry is replaced: terminal transitions get
        reward.total, others reward.total + gamma * bootstrap, where the
        bootstrap value is Q_target(s', argmax_a Q_online(s', a)) with
        double DQN and max_a Q_target(s', a) otherwise. All other entries
        keep the online network's prediction.

        Args:
            batch: Sequence of experiences

        Returns:
            Array of shape (len(batch), n_actions)
        """
        self._require_networks('compute_targets')
        return self._target_tensor(batch).cpu().numpy()

    def train(self) -> float:
        """
        Perform one learning update from a replay batch.

        Returns:
            Loss of the update, or 0.0 when memory holds fewer than
            batch_size experiences or the update was skipped
        """
        self._require_networks('train')
        if len(self.memory) < self.batch_size:
            return 0.0

        batch = self.memory.sample(self.batch_size)
        states = self._states_to_tensor([e.state for e in batch])
        with network_mode(self.online_net, training=True):
            predictions = self.online_net(states)
            targets = self._target_tensor(batch, predictions)
            if not torch.isfinite(targets).all():
                logger.warning("Non-finite learning targets; skipping update")
                return 0.0

            loss = self.loss_fn(predictions, targets)

            if not torch.isfinite(loss):
                logger.warning(f"Non-finite loss ({loss.item()}); skipping update")
                return 0.0

            self.optimizer.zero_grad()
            loss.backward()
            if self.config.gradient_clipping > 0:
                torch.nn.utils.clip_grad_norm_(self.online_net.parameters(), self.config.gradient_clipping)
            self.optimizer.step()
            loss_value = float(loss.item())

        self.update_steps += 1
        if self.update_steps % self.target_update_frequency == 0:
            self.update_target_network()

        self.decay_epsilon()
        self.last_loss = loss_value
        return loss_value

    def decay_epsilon(self) -> float:
        """Multiplicative decay floored at epsilon_min."""
        self.epsilon = max(self.epsilon_min, self.epsilon * self.epsilon_decay)
        return self.epsilon

    def update_target_network(self) -> None:
        """
        Hard update: copy online network weights to target network.
        """
        self._require_networks('update_target_network')
        self.target_net.load_state_dict(self.online_net.state_dict())
        self.target_syncs += 1
        logger.debug(f"Target network synced at update {self.update_steps}")

    def adjust_learning_rate(self, factor: float) -> float:
        """
        Scale the learning rate and attach a fresh optimizer.

        The new rate is clamped to [min_learning_rate, max_learning_rate].
        Network parameters are kept.

        Args:
            factor: Multiplier for the current learning rate

        Returns:
            New learning rate
        """
        self._require_networks('adjust_learning_rate')
        new_rate = self.learning_rate * factor
        new_rate = max(self.config.min_learning_rate, min(self.config.max_learning_rate, new_rate))
        if new_rate != self.learning_rate:
            logger.info(f"Learning rate: {self.learning_rate:.6f} -> {new_rate:.6f}")
        self.learning_rate = new_rate
        self.optimizer = self._build_optimizer(new_rate)
        return new_rate

    # ------------------------------------------------------------------
    # Persistence / lifecycle
    # ------------------------------------------------------------------

    def save_model(self, path: str) -> None:
        """
        Save agent state to file.

        Args:
            path: Path to save checkpoint
        """
        self._require_networks('save_model')
        checkpoint = {
            'online_net_state_dict': self.online_net.state_dict(),
            'optimizer_state_dict': self.optimizer.state_dict(),
            'state_size': self.state_size,
            'n_actions': self.n_actions,
            'epsilon': self.epsilon,
            'learning_rate': self.learning_rate,
            'update_steps': self.update_steps,
            'config': asdict(self.config),
        }
        torch.save(checkpoint, path)
        logger.info(f"Model saved: {path}")

    def load_model(self, path: str) -> None:
        """
        Load agent state from file and re-sync the target network.

        Args:
            path: Path to load checkpoint from
        """
        self._require_networks('load_model')
        checkpoint = torch.load(path, map_location=self.device)
        if checkpoint['state_size'] != self.state_size or checkpoint['n_actions'] != self.n_actions:
            raise ConfigurationError(
                f"DQNAgent.load_model: checkpoint shape ({checkpoint['state_size']}, "
                f"{checkpoint['n_actions']}) does not match agent ({self.state_size}, {self.n_actions})"
            )
        self.online_net.load_state_dict(checkpoint['online_net_state_dict'])
        self.update_target_network()

        self.learning_rate = checkpoint.get('learning_rate', self.learning_rate)
        self.optimizer = self._build_optimizer(self.learning_rate)
        if 'optimizer_state_dict' in checkpoint:
            self.optimizer.load_state_dict(checkpoint['optimizer_state_dict'])

        # Keep epsilon within this agent's schedule
        self.epsilon = min(self.epsilon_initial, max(self.epsilon_min, float(checkpoint['epsilon'])))
        self.update_steps = checkpoint.get('update_steps', 0)
        logger.info(f"Model loaded: {path}")

    def dispose(self) -> None:
        """
        Release both networks and the optimizer.

        Any later operation raises ConfigurationError, including a second
        dispose().
        """
        if self.disposed:
            raise ConfigurationError("DQNAgent.dispose: agent was already disposed")
        self.online_net = None
        self.target_net = None
        self.optimizer = None
        self.memory.clear()
        self.disposed = True
        if self.device.type == 'cuda':
            torch.cuda.empty_cache()
        logger.debug("DQNAgent disposed")

    def get_stats(self) -> Dict[str, Any]:
        """
        Get current agent statistics.

        Returns:
            Dictionary with agent metrics
        """
        return {
            'update_steps': self.update_steps,
            'target_syncs': self.target_syncs,
            'epsilon': self.epsilon,
            'learning_rate': self.learning_rate,
            'memory_size': len(self.memory),
            'last_loss': self.last_loss,
            'disposed': self.disposed,
        }
