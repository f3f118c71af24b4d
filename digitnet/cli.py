"""
cli.py
~~~~~~

Command-line entry point.

Usage::

    digitnet train mnist_train.csv --checkpoint models/run1 --limit 10000
    digitnet evaluate mnist_test.csv --checkpoint models/run1
    digitnet predict mnist_test.csv --checkpoint models/run1 --index 7 --show
    digitnet show mnist_test.csv --limit 3
    digitnet serve
"""

import sys
import logging
import argparse
from typing import List, Optional

from digitnet.config import configure_logging, get_settings
from digitnet.dataset import IMAGE_SIDE, NUM_CLASSES, load_csv, render_sample
from digitnet.errors import DigitNetError
from digitnet.network import Network

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog='digitnet',
        description='Train and run a two-layer digit recognition network.'
    )
    parser.add_argument(
        '--dtype', default=settings.dtype, choices=['float32', 'float64'],
        help='Element type of all matrices (default: %(default)s)'
    )
    parser.add_argument(
        '--sequential', action='store_true',
        help='Use the sequential matrix operations instead of the parallel ones'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    train = subparsers.add_parser('train', help='Train a network on a CSV file')
    train.add_argument('csv', help='Training CSV (label,pixel0,...,pixel783)')
    train.add_argument('--checkpoint', required=True,
                       help='Directory to write the trained network to')
    train.add_argument('--resume', action='store_true',
                       help='Continue from the weights already in --checkpoint')
    train.add_argument('--limit', type=int, default=None,
                       help='Train on at most this many samples')
    train.add_argument('--hidden', type=int, default=settings.hidden_size,
                       help='Hidden layer size (default: %(default)s)')
    train.add_argument('--learning-rate', type=float,
                       default=settings.learning_rate,
                       help='Learning rate (default: %(default)s)')
    train.add_argument('--epochs', type=int, default=1,
                       help='Passes over the data (default: %(default)s)')
    train.add_argument('--test-csv', default=None,
                       help='Report accuracy on this CSV after training')

    evaluate = subparsers.add_parser('evaluate', help='Measure accuracy on a CSV file')
    evaluate.add_argument('csv')
    evaluate.add_argument('--checkpoint', required=True)
    evaluate.add_argument('--limit', type=int, default=None)

    predict = subparsers.add_parser('predict', help='Classify one sample of a CSV file')
    predict.add_argument('csv')
    predict.add_argument('--checkpoint', required=True)
    predict.add_argument('--index', type=int, default=0,
                         help='Zero-based sample index (default: %(default)s)')
    predict.add_argument('--show', action='store_true',
                         help='Draw the sample as text art')

    show = subparsers.add_parser('show', help='Draw samples of a CSV file as text art')
    show.add_argument('csv')
    show.add_argument('--limit', type=int, default=1)

    subparsers.add_parser('serve', help='Run the HTTP/WebSocket API server')
    return parser


def _load_network(args: argparse.Namespace, learning_rate: float) -> Network:
    return Network.from_checkpoint(
        args.checkpoint,
        learning_rate=learning_rate,
        dtype=args.dtype,
        parallel=not args.sequential
    )


def cmd_train(args: argparse.Namespace) -> int:
    if args.epochs < 1:
        logger.error("--epochs must be at least 1")
        return 2

    samples = load_csv(args.csv, limit=args.limit, dtype=args.dtype)
    if args.resume:
        net = _load_network(args, args.learning_rate)
    else:
        net = Network(
            IMAGE_SIDE * IMAGE_SIDE, args.hidden, NUM_CLASSES,
            args.learning_rate,
            dtype=args.dtype,
            parallel=not args.sequential
        )

    for epoch in range(1, args.epochs + 1):
        logger.info(f"Epoch {epoch}/{args.epochs}")
        net.train_batch(samples)

    net.save(args.checkpoint)
    print(f"Saved network {net.sizes} to {args.checkpoint}")

    if args.test_csv:
        test_samples = load_csv(args.test_csv, dtype=args.dtype)
        print(f"Accuracy: {net.accuracy(test_samples):.2%}")
    return 0


def cmd_evaluate(args: argparse.Namespace) -> int:
    net = _load_network(args, get_settings().learning_rate)
    samples = load_csv(args.csv, limit=args.limit, dtype=args.dtype)
    correct = net.evaluate(samples)
    total = len(samples)
    accuracy = correct / total if total else 0.0
    print(f"Correct: {correct}/{total} ({accuracy:.2%})")
    return 0


def cmd_predict(args: argparse.Namespace) -> int:
    if args.index < 0:
        logger.error("--index must be non-negative")
        return 2
    net = _load_network(args, get_settings().learning_rate)
    samples = load_csv(args.csv, limit=args.index + 1, dtype=args.dtype)
    if args.index >= len(samples):
        logger.error(f"{args.csv} has only {len(samples)} sample(s)")
        return 1

    sample = samples[args.index]
    guess = net.predict_sample(sample).argmax()
    if args.show:
        print(render_sample(sample))
    print(f"Guess: {guess}")
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    for sample in load_csv(args.csv, limit=args.limit, dtype=args.dtype):
        print(render_sample(sample))
        print()
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    from digitnet import api_server
    return api_server.main()


COMMANDS = {
    'train': cmd_train,
    'evaluate': cmd_evaluate,
    'predict': cmd_predict,
    'show': cmd_show,
    'serve': cmd_serve,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the command and return an exit code."""
    configure_logging()
    args = build_parser().parse_args(argv)

    try:
        return COMMANDS[args.command](args)
    except DigitNetError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
