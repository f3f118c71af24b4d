"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for digit recognition.

This module provides endpoints for:
- Creating and managing networks
- Training networks in the background with real-time progress updates
- Classifying digits and showing correct / incorrect test examples
- Persisting networks to the checkpoint registry

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background tasks
- The SQLite checkpoint registry in ``model_persistence``
"""

import sys
import uuid
import base64
import logging
import threading
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Blueprint, Flask, current_app, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digitnet.config import Settings, configure_logging, get_settings
from digitnet.dataset import (
    IMAGE_SIDE,
    NUM_CLASSES,
    PIXEL_SCALE,
    LabeledSample,
    load_csv,
    render_sample,
)
from digitnet.element import resolve_element
from digitnet.errors import DigitNetError
from digitnet.matrix import Matrix
from digitnet.network import Network
from digitnet.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


# ============================================================================
# SERVER STATE
# ============================================================================

class ServerState:
    """
    In-memory state shared by the request handlers and background tasks.

    Attributes:
        active_networks: Networks currently loaded, ``{network_id: info}``
        training_jobs: Tracked training jobs, ``{job_id: info}``
        training_data: Samples used for training (None when unavailable)
        test_data: Samples used for accuracy and examples
    """

    def __init__(
        self,
        settings: Settings,
        training_data: Optional[List[LabeledSample]] = None,
        test_data: Optional[List[LabeledSample]] = None
    ):
        self.settings = settings
        self.active_networks: Dict[str, Dict[str, Any]] = {}
        self.training_jobs: Dict[str, Dict[str, Any]] = {}
        self.training_data = training_data
        self.test_data = test_data
        self.cleanup_task_started = False
        self.jobs_lock = threading.Lock()


def _state() -> ServerState:
    return current_app.extensions['digitnet']


def _socketio() -> SocketIO:
    return current_app.extensions['socketio']


def _active_job(state: ServerState, network_id: str) -> Optional[str]:
    """Id of the pending or running training job for a network, if any."""
    for job_id, job in state.training_jobs.items():
        if job.get('network_id') == network_id and job.get('status') in ('pending', 'training'):
            return job_id
    return None


# ============================================================================
# DATA LOADING
# ============================================================================

def load_dataset(state: ServerState) -> None:
    """
    Load the configured training and test CSV files into the state.

    Missing paths leave the corresponding data set empty; unreadable files
    are logged and also leave it empty.
    """
    settings = state.settings
    for attr, path in (('training_data', settings.train_csv),
                       ('test_data', settings.test_csv)):
        if not path:
            continue
        logger.info(f"Loading {attr} from {path}...")
        try:
            setattr(state, attr, load_csv(path, dtype=settings.dtype))
        except DigitNetError as e:
            logger.error(f"Error loading {attr} from {path}: {e}")


def reload_saved_networks(state: ServerState) -> None:
    """
    Reload all registered networks into memory.

    Called at startup to restore networks saved before a restart.
    """
    model_dir = state.settings.model_dir
    saved_networks = list_saved_networks(model_dir)

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id, model_dir)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue
        state.active_networks[network_id] = {
            'network': net,
            'architecture': net_info['architecture'],
            'trained': net_info['trained'],
            'accuracy': net_info['accuracy']
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from the registry")


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    training_data: Optional[List[LabeledSample]] = None,
    test_data: Optional[List[LabeledSample]] = None,
    load_data: bool = True
) -> Flask:
    """
    Build the Flask app with its SocketIO server and state.

    Args:
        settings: Configuration (defaults to the environment)
        training_data: Samples to train on; loaded from ``train_csv`` when
            omitted and ``load_data`` is set
        test_data: Samples to evaluate on; loaded from ``test_csv`` likewise
        load_data: Whether to read the configured CSV files

    Returns:
        Flask: The configured application
    """
    settings = settings or get_settings()

    app = Flask(__name__)
    CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

    # SocketIO enables real-time communication (WebSockets) for training updates
    SocketIO(
        app,
        cors_allowed_origins="*",
        async_mode=settings.async_mode,
        logger=not settings.is_production,
        engineio_logger=not settings.is_production,
        ping_timeout=60,
        ping_interval=25
    )

    state = ServerState(settings, training_data, test_data)
    if load_data and training_data is None and test_data is None:
        load_dataset(state)
    app.extensions['digitnet'] = state

    reload_saved_networks(state)
    app.register_blueprint(api)
    return app


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

def cleanup_old_networks_task(state: ServerState) -> None:
    """
    Background task that runs immediately on startup, then every 24 hours to:
    - Delete networks older than ``cleanup_days`` from the registry
    - Sync in-memory networks with the registry
    - Remove completed/failed training jobs from memory
    """
    logger.info("Cleanup task started")

    while True:
        try:
            sync_deleted_networks(state, delete_old_networks(
                days=state.settings.cleanup_days,
                model_dir=state.settings.model_dir
            ))
            cleanup_finished_training_jobs(state)

            logger.info("Next cleanup scheduled in 24 hours")
            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Error during network cleanup: {e}")
            # Wait a bit before retrying on error (don't spam)
            gevent.sleep(3600)


def sync_deleted_networks(state: ServerState, deleted_count: int) -> None:
    """Drop in-memory networks that are no longer in the registry."""
    if deleted_count < 0:
        logger.error("Cleanup returned error code")
        return
    if deleted_count == 0:
        logger.info("Cleanup completed: no old networks found to delete")
        return

    logger.info(f"Cleanup completed: deleted {deleted_count} network(s)")
    saved_ids = {
        net['network_id'] for net in list_saved_networks(state.settings.model_dir)
    }
    for nid in [nid for nid in state.active_networks if nid not in saved_ids]:
        del state.active_networks[nid]
        logger.info(f"Removed network {nid} from memory (deleted from registry)")


def cleanup_finished_training_jobs(state: ServerState) -> None:
    """Remove completed or failed training jobs from memory."""
    finished_statuses = {'completed', 'failed'}
    with state.jobs_lock:
        jobs_to_remove = [
            job_id for job_id, job_info in state.training_jobs.items()
            if job_info.get('status') in finished_statuses
        ]
        for job_id in jobs_to_remove:
            del state.training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task(state: ServerState) -> None:
    """
    Start the background cleanup task once.

    Uses gevent.spawn() directly so it also runs under gunicorn.
    """
    if state.cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    state.cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_networks_task, state)


def train_network_task(
    state: ServerState,
    socketio: SocketIO,
    network_id: str,
    job_id: str,
    epochs: int,
    limit: Optional[int]
) -> None:
    """
    Background task that trains a network one sample at a time.

    Sends progress updates via WebSocket as training progresses.
    """
    job = state.training_jobs[job_id]

    def on_progress(epoch: int, data: Dict[str, Any]) -> None:
        """Called every few samples to send progress updates."""
        done = (epoch - 1) * data['total'] + data['index']
        progress = done / (epochs * data['total']) * 100 if data['total'] else 100

        job['status'] = 'training'
        job['progress'] = progress

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': epoch,
            'total_epochs': epochs,
            'sample': data['index'],
            'total_samples': data['total'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress
        })
        socketio.sleep(0)

    try:
        info = state.active_networks.get(network_id)
        if info is None:
            raise LookupError(f"Network {network_id} was deleted before training started")
        net = info['network']
        samples = state.training_data[:limit] if limit else state.training_data

        logger.info(f"Starting training for job {job_id}")

        for epoch in range(1, epochs + 1):
            net.train_batch(
                samples,
                callback=lambda data, epoch=epoch: on_progress(epoch, data),
                yield_func=lambda: socketio.sleep(0)
            )

        accuracy = net.accuracy(state.test_data) if state.test_data else None

        info = state.active_networks.get(network_id)
        if info is not None:
            info['trained'] = True
            info['accuracy'] = accuracy

        job['status'] = 'completed'
        job['accuracy'] = accuracy
        job['progress'] = 100

        if info is not None:
            save_network(
                net, network_id,
                model_dir=state.settings.model_dir,
                trained=True,
                accuracy=accuracy
            )

        if accuracy is not None:
            logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")
        else:
            logger.info(f"Training completed for job {job_id} (no test data)")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': accuracy,
            'progress': 100
        })
        socketio.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        job['status'] = 'failed'
        job['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        socketio.sleep(0)


# ============================================================================
# API ENDPOINTS
# ============================================================================

@api.route('/status', methods=['GET'])
def get_status():
    """
    Return server status and statistics.

    Counts only training jobs that are pending or in progress.
    """
    state = _state()
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in state.training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(state.active_networks),
        'training_jobs': active_training,
        'training_samples': len(state.training_data or []),
        'test_samples': len(state.test_data or [])
    }), 200


@api.route('/networks', methods=['POST'])
def create_network():
    """
    Create a new network with random weights.

    Request body (optional):
        {'hidden': 100, 'learning_rate': 0.1, 'dtype': 'float64'}

    Returns:
        JSON with network_id, architecture, and status
    """
    state = _state()
    settings = state.settings
    data = request.get_json(silent=True) or {}
    hidden = data.get('hidden', settings.hidden_size)
    learning_rate = data.get('learning_rate', settings.learning_rate)
    dtype = data.get('dtype', settings.dtype)

    if not isinstance(hidden, int) or isinstance(hidden, bool) or hidden < 1:
        logger.warning(f"Invalid hidden size requested: {hidden}")
        return jsonify({'error': 'hidden must be a positive integer'}), 400
    if (not isinstance(learning_rate, (int, float)) or isinstance(learning_rate, bool)
            or learning_rate <= 0):
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    try:
        element = resolve_element(dtype)
    except TypeError:
        return jsonify({'error': f'Unsupported dtype: {dtype}'}), 400

    network_id = str(uuid.uuid4())
    architecture = [IMAGE_SIDE * IMAGE_SIDE, hidden, NUM_CLASSES]

    try:
        net = Network(*architecture, learning_rate, dtype=element)
    except DigitNetError as e:
        logger.error(f"Error creating network: {e}")
        return jsonify({'error': f'Failed to create network: {e}'}), 400

    state.active_networks[network_id] = {
        'network': net,
        'architecture': architecture,
        'trained': False,
        'accuracy': None
    }
    save_network(net, network_id, model_dir=settings.model_dir, trained=False)

    logger.info(f"Created network {network_id} with architecture {architecture}")

    return jsonify({
        'network_id': network_id,
        'architecture': architecture,
        'dtype': element.name,
        'status': 'created'
    }), 201


@api.route('/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body (all optional):
        {'epochs': 1, 'limit': 1000}

    Returns:
        JSON with job_id, network_id, and status
    """
    state = _state()
    if network_id not in state.active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if not state.training_data:
        logger.error("Training data not loaded")
        return jsonify({'error': 'Training data not available'}), 503

    data = request.get_json(silent=True) or {}
    epochs = data.get('epochs', 1)
    limit = data.get('limit')

    if not isinstance(epochs, int) or isinstance(epochs, bool) or epochs < 1:
        return jsonify({'error': 'epochs must be a positive integer'}), 400
    if limit is not None and (
            not isinstance(limit, int) or isinstance(limit, bool) or limit < 1):
        return jsonify({'error': 'limit must be a positive integer'}), 400

    job_id = str(uuid.uuid4())
    with state.jobs_lock:
        if _active_job(state, network_id) is not None:
            logger.warning(f"Training already in progress for network {network_id}")
            return jsonify({'error': 'Network is already training'}), 409
        state.training_jobs[job_id] = {
            'network_id': network_id,
            'status': 'pending',
            'progress': 0,
            'epochs': epochs
        }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={epochs}, limit={limit}"
    )

    # Run training in background so we can return immediately
    socketio = _socketio()
    socketio.start_background_task(
        train_network_task,
        state, socketio, network_id, job_id, epochs, limit
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


@api.route('/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    state = _state()
    if job_id in state.training_jobs:
        return jsonify(state.training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@api.route('/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    state = _state()
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'status': 'in_memory'
        }
        for nid, info in state.active_networks.items()
    ]

    # Saved networks, excluding duplicates already in memory
    in_memory_ids = set(state.active_networks.keys())
    saved_only = []
    for net in list_saved_networks(state.settings.model_dir):
        if net['network_id'] not in in_memory_ids:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@api.route('/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    state = _state()
    deleted_from_memory = False
    if network_id in state.active_networks:
        del state.active_networks[network_id]
        deleted_from_memory = True

    deleted_from_disk = delete_network(network_id, state.settings.model_dir)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@api.route('/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all networks from both memory and disk."""
    state = _state()
    model_dir = state.settings.model_dir
    in_memory_ids = list(state.active_networks.keys())
    saved_ids = [net['network_id'] for net in list_saved_networks(model_dir)]
    all_network_ids = list(set(in_memory_ids + saved_ids))

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0

    for network_id in all_network_ids:
        if network_id in state.active_networks:
            del state.active_networks[network_id]
            deleted_from_memory_count += 1

        if delete_network(network_id, model_dir):
            deleted_from_disk_count += 1

    logger.info(
        f"Deleted all networks: {len(all_network_ids)} total, "
        f"{deleted_from_memory_count} from memory, {deleted_from_disk_count} from disk"
    )

    return jsonify({
        'deleted_count': len(all_network_ids),
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count,
        'message': f'Successfully deleted {len(all_network_ids)} network(s)'
    }), 200


@api.route('/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Manually trigger cleanup of networks older than specified days.

    Request body (optional):
        {'days': 2}  # defaults to the configured cleanup age

    Returns:
        JSON with deleted_count, days, and message
    """
    state = _state()
    data = request.get_json(silent=True) or {}
    days = data.get('days', state.settings.cleanup_days)

    if not isinstance(days, (int, float)) or isinstance(days, bool) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = delete_old_networks(
        days=int(days), model_dir=state.settings.model_dir
    )
    if deleted_count == -1:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    sync_deleted_networks(state, deleted_count)
    logger.info(f"Manual cleanup: deleted {deleted_count} network(s) older than {days} day(s)")

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': f'Successfully deleted {deleted_count} network(s) older than {days} day(s)'
    }), 200


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def pixels_to_input(pixels: Any, normalized: bool, dtype: Any) -> Matrix:
    """
    Turn request pixels into an input column.

    Accepts either a flat list of ``IMAGE_SIDE**2`` values or a list of
    ``IMAGE_SIDE`` rows. Raw intensities are divided by ``PIXEL_SCALE``
    unless ``normalized`` is set.

    Raises:
        ValueError: If the pixels have the wrong shape or are not numbers
    """
    array = np.asarray(pixels, dtype=np.float64)
    if array.shape not in ((IMAGE_SIDE * IMAGE_SIDE,), (IMAGE_SIDE, IMAGE_SIDE)):
        raise ValueError(
            f"pixels must be {IMAGE_SIDE * IMAGE_SIDE} values or "
            f"{IMAGE_SIDE}x{IMAGE_SIDE} rows, got shape {list(array.shape)}"
        )
    if not normalized:
        array = array / PIXEL_SCALE
    return Matrix.from_flat(array.size, 1, array.ravel().tolist(), dtype)


def create_digit_image(sample: LabeledSample, predicted: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        sample: The labeled image
        predicted: The digit the network predicted (0-9)

    Returns:
        Base64-encoded PNG image string
    """
    plt.figure(figsize=(3, 3))
    plt.imshow(np.array(sample.matrix.to_lists()), cmap='gray')
    plt.title(f"Predicted: {predicted} | Actual: {sample.label}")
    plt.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


@api.route('/networks/<network_id>/predict', methods=['POST'])
def predict_digit(network_id: str):
    """
    Classify one image.

    Request body:
        {'pixels': [...784 values or 28 rows...], 'normalized': false}

    Returns:
        JSON with predicted_digit and the softmax network_output
    """
    state = _state()
    if network_id not in state.active_networks:
        return jsonify({'error': 'Network not found'}), 404

    net = state.active_networks[network_id]['network']
    data = request.get_json(silent=True) or {}
    if 'pixels' not in data:
        return jsonify({'error': 'pixels is required'}), 400

    try:
        input_data = pixels_to_input(
            data['pixels'], bool(data.get('normalized', False)), net.element
        )
        output = net.predict(input_data)
    except (ValueError, TypeError) as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'network_id': network_id,
        'predicted_digit': output.argmax(),
        'network_output': output.values()
    }), 200


def _find_example(network_id: str, want_correct: bool, max_attempts: int):
    """Search random test samples for a (mis)classified example."""
    state = _state()
    kind = 'successful' if want_correct else 'unsuccessful'
    if network_id not in state.active_networks:
        logger.warning(f"{kind.capitalize()} example requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if not state.test_data:
        logger.error("Test data not loaded")
        return jsonify({'error': 'Test data not available'}), 503

    net = state.active_networks[network_id]['network']
    data = state.test_data
    rng = np.random.default_rng()

    for attempt in range(max_attempts):
        index = int(rng.integers(0, len(data)))
        sample = data[index]

        output = net.predict_sample(sample)
        predicted_digit = output.argmax()

        if (predicted_digit == sample.label) == want_correct:
            logger.debug(f"Found {kind} example on attempt {attempt + 1}")

            return jsonify({
                'network_id': network_id,
                'example_index': index,
                'predicted_digit': predicted_digit,
                'actual_digit': sample.label,
                'image_data': create_digit_image(sample, predicted_digit),
                'text_art': render_sample(sample),
                'output_weights': net.output_weights.to_lists(),
                'network_output': output.values()
            }), 200

    logger.warning(f"No {kind} example found after {max_attempts} attempts")
    return jsonify({
        'error': f'No {kind} example found after {max_attempts} attempts'
    }), 404


@api.route('/networks/<network_id>/successful_example', methods=['GET'])
def get_successful_example(network_id: str):
    """Return a random test example the network classifies correctly."""
    return _find_example(network_id, want_correct=True, max_attempts=100)


@api.route('/networks/<network_id>/unsuccessful_example', methods=['GET'])
def get_unsuccessful_example(network_id: str):
    """Return a random test example the network gets wrong."""
    return _find_example(network_id, want_correct=False, max_attempts=200)


# ============================================================================
# SERVER STARTUP
# ============================================================================

def main(settings: Optional[Settings] = None) -> int:
    """Configure logging, build the app and serve until interrupted."""
    settings = settings or get_settings()
    configure_logging(settings)

    app = create_app(settings)
    socketio = app.extensions['socketio']

    if settings.is_production:
        logger.info(f"Starting server in production mode on port {settings.port}")
    else:
        logger.info(f"Starting server at http://localhost:{settings.port}/")

    start_cleanup_task(app.extensions['digitnet'])

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=settings.port,
            debug=not settings.is_production,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {settings.port} is already in use.")
            return 1
        raise
    return 0


if __name__ == '__main__':
    sys.exit(main())
