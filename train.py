"""
Train script for the DQN trading agent.

Loads a price/volume series, builds environment and agent from a preset
(optionally overridden by a JSON config), trains, evaluates greedily on the
held-out tail of the series and saves the model, metadata and history.
"""

import argparse
import copy
import json
import logging
import os
import sys
from datetime import datetime
from typing import Dict, List, Optional

import torch

from callbacks import AdaptiveLearningRate, BestModelCheckpoint, EarlyStopping, ProgressLogger
from data_loader import PriceDataLoader
from dqn_agent import DQNAgent
from rl_config import PRESETS, TrainerConfig, config_to_dict, get_preset, load_config, save_config
from trading_env import TradingEnvironment
from trainer import EpisodeMetrics, Trainer

logger = logging.getLogger(__name__)


# ============================================================================
# LOGGING SYSTEM
# ============================================================================

def setup_logging(run_name: str, log_dir: str = "logs", level: int = logging.INFO) -> str:
    """
    Send log records to the console and a per-run log file.

    Args:
        run_name: Name used in the log file name
        log_dir: Directory to store log files
        level: Root log level

    Returns:
        Path of the log file
    """
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"{run_name}_{timestamp}.txt")

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    logger.info("=" * 80)
    logger.info(f"LOGGING INITIALIZED: {run_name}")
    logger.info(f"Log file: {log_file}")
    logger.info("=" * 80)
    return log_file


# ============================================================================
# PERSISTENCE
# ============================================================================

def save_model(
    agent: DQNAgent,
    save_dir: str,
    model_name: str,
    metadata: Dict
) -> str:
    """Save model checkpoint with metadata."""
    os.makedirs(save_dir, exist_ok=True)

    model_path = os.path.join(save_dir, f"{model_name}.pt")
    agent.save_model(model_path)

    metadata_path = os.path.join(save_dir, f"{model_name}_metadata.json")
    with open(metadata_path, 'w') as f:
        json.dump(metadata, f, indent=2, default=str)

    logger.info(f"Metadata saved: {metadata_path}")
    return model_path


def summarize(metrics: List[EpisodeMetrics]) -> Dict[str, float]:
    """Average the headline metrics over a list of episodes."""
    if not metrics:
        return {}
    n = len(metrics)
    return {
        'episodes': n,
        'mean_total_return': sum(m.total_return for m in metrics) / n,
        'mean_sharpe_ratio': sum(m.sharpe_ratio for m in metrics) / n,
        'mean_max_drawdown': sum(m.max_drawdown for m in metrics) / n,
        'mean_win_rate': sum(m.win_rate for m in metrics) / n,
        'mean_total_trades': sum(m.total_trades for m in metrics) / n,
    }


# ============================================================================
# CLI
# ============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Train the DQN trading agent")
    parser.add_argument('--data', required=True, help="CSV or Parquet file with timestamp/close/volume columns")
    parser.add_argument('--preset', default='improved', choices=sorted(PRESETS), help="Configuration preset")
    parser.add_argument('--config', default=None, help="JSON file with overrides applied on top of the preset")
    parser.add_argument('--episodes', type=int, default=100, help="Number of training episodes")
    parser.add_argument('--eval-episodes', type=int, default=1, help="Number of greedy evaluation episodes")
    parser.add_argument('--train-ratio', type=float, default=0.8, help="Chronological train fraction")
    parser.add_argument('--patience', type=int, default=0, help="Early-stopping patience in episodes (0 = off)")
    parser.add_argument('--save-dir', default='models', help="Directory for model checkpoints")
    parser.add_argument('--log-dir', default='logs', help="Directory for log files")
    parser.add_argument('--seed', type=int, default=None, help="Random seed (default: non-reproducible)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main training orchestration."""
    args = parse_args(argv)
    run_name = f"{args.preset}_train"
    setup_logging(run_name, args.log_dir)

    if args.config:
        env_config, agent_config, trainer_config = load_config(args.config, preset=args.preset)
    else:
        env_config, agent_config = get_preset(args.preset)
        trainer_config = TrainerConfig()
    if args.seed is not None:
        agent_config.seed = args.seed

    logger.info(f"Data path: {args.data}")
    logger.info(f"Preset: {args.preset}")
    logger.info(f"Device: {'cuda' if torch.cuda.is_available() else 'cpu'}")
    logger.info(f"PyTorch version: {torch.__version__}")

    loader = PriceDataLoader(args.data)
    (train_prices, train_volumes), (test_prices, test_volumes) = loader.train_test_split(args.train_ratio)

    train_env = TradingEnvironment(train_prices, train_volumes, env_config, seed=args.seed)
    test_config = copy.deepcopy(env_config)
    # Held-out evaluation always runs on historical prices
    test_config.enable_synthetic_data = False
    test_env = TradingEnvironment(test_prices, test_volumes, test_config, seed=args.seed)

    agent = DQNAgent(train_env.state_size, train_env.n_actions, agent_config)

    best_path = os.path.join(args.save_dir, f"{args.preset}_best.pt")
    callbacks = [
        ProgressLogger(log_every=trainer_config.log_every),
        AdaptiveLearningRate(),
        BestModelCheckpoint(best_path),
    ]
    if args.patience > 0:
        callbacks.append(EarlyStopping(patience=args.patience))

    trainer = Trainer(train_env, agent, trainer_config, callbacks)

    logger.info("=" * 80)
    logger.info(f"TRAINING: {args.episodes} episodes on {len(train_prices):,} bars")
    logger.info("=" * 80)
    trainer.train_for_episodes(args.episodes)

    logger.info("=" * 80)
    logger.info(f"EVALUATION: {args.eval_episodes} greedy episode(s) on {len(test_prices):,} held-out bars")
    logger.info("=" * 80)
    evaluation = trainer.evaluate(test_env, args.eval_episodes)

    os.makedirs(args.save_dir, exist_ok=True)
    history_path = os.path.join(args.save_dir, f"{args.preset}_history.csv")
    trainer.history_frame().to_csv(history_path, index=False)
    logger.info(f"History saved: {history_path}")

    save_config(os.path.join(args.save_dir, f"{args.preset}_config.json"), env_config, agent_config, trainer_config)

    metadata = {
        'timestamp': datetime.now().isoformat(),
        'preset': args.preset,
        'data_path': args.data,
        'split': loader.get_split_info(args.train_ratio),
        'episodes_run': len(trainer.history),
        'agent_stats': agent.get_stats(),
        'environment_config': config_to_dict(env_config),
        'training_summary': summarize(trainer.history),
        'evaluation_summary': summarize(evaluation),
        'evaluation': [m.to_dict() for m in evaluation],
    }
    save_model(agent, args.save_dir, f"{args.preset}_final", metadata)

    summary = metadata['evaluation_summary']
    if summary:
        logger.info(
            f"Held-out return: {summary['mean_total_return']:+.2%} | "
            f"Sharpe: {summary['mean_sharpe_ratio']:+.3f} | "
            f"MaxDD: {summary['mean_max_drawdown']:.2%}"
        )

    agent.dispose()
    logger.info("TRAINING COMPLETE")
    return 0


if __name__ == "__main__":
    sys.exit(main())
