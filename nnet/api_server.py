"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for neural network training.

This module provides endpoints for:
- Creating, importing, exporting and deleting neural networks
- Training networks on PGM digit images with real-time progress updates
  via WebSockets
- Classifying inputs and showing (mis)classified test images
- Persisting networks to/from SQLite database

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- SQLite for network persistence
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, Response, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from nnet.errors import DimensionMismatchError, MalformedStreamError
from nnet.logging_setup import configure_logging
from nnet.matrix import Matrix
from nnet.network import Network
from nnet.trainer import Sample, load_samples, read_image_list, run_epochs
from nnet.model_persistence import (
    DB_FILENAME,
    DEFAULT_MODEL_DIR,
    save_network,
    load_network,
    export_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

MODEL_DIR = os.getenv('NNET_MODEL_DIR', DEFAULT_MODEL_DIR)
DATA_DIR = os.getenv('NNET_DATA_DIR')
TRAIN_LIST = os.getenv('NNET_TRAIN_LIST', 'TrainingSetList.txt')
TEST_LIST = os.getenv('NNET_TEST_LIST', 'TestingSetList.txt')
TRAIN_LIMIT = int(os.getenv('NNET_TRAIN_LIMIT', '5000'))

DEFAULT_LAYER_SIZES = [784, 30, 10]
DEFAULT_LEARNING_RATE = 0.3

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# Image samples - loaded once at startup
training_data: Optional[List[Sample]] = None
test_data: Optional[List[Sample]] = None


# ============================================================================
# DATA LOADING
# ============================================================================

def _resolve_list_file(list_file: str) -> str:
    """List files are looked up as given first, then inside DATA_DIR."""
    if os.path.isabs(list_file) or os.path.exists(list_file):
        return list_file
    return os.path.join(DATA_DIR, list_file)


def load_image_data() -> None:
    """
    Load the training and test images into global variables.

    Called once at startup to avoid reloading images for each training run.
    Without NNET_DATA_DIR the server still runs, but cannot train.
    """
    global training_data, test_data

    if not DATA_DIR:
        logger.warning(
            "NNET_DATA_DIR is not set; training and examples are unavailable"
        )
        return

    logger.info(f"Loading images from {DATA_DIR}...")
    try:
        train_names = read_image_list(_resolve_list_file(TRAIN_LIST), TRAIN_LIMIT)
        test_names = read_image_list(_resolve_list_file(TEST_LIST))
        training_data = load_samples(DATA_DIR, train_names)
        test_data = load_samples(DATA_DIR, test_names)
        logger.info(
            f"Data loaded: {len(training_data)} training, "
            f"{len(test_data)} test"
        )
    except Exception as e:
        logger.exception(f"Error loading image data: {e}")
        raise


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the database into memory.

    Called at startup to restore networks that were saved before the
    application was restarted.
    """
    if not os.path.exists(os.path.join(MODEL_DIR, DB_FILENAME)):
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in list_saved_networks(MODEL_DIR):
        network_id = net_info['network_id']
        net = load_network(network_id, MODEL_DIR)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue
        active_networks[network_id] = {
            'network': net,
            'architecture': net_info['architecture'],
            'trained': net_info['trained'],
            'accuracy': net_info['accuracy']
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


load_image_data()
reload_saved_networks()


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_old_networks_task() -> None:
    """
    Background task that runs immediately, then every 24 hours to:
    - Delete networks older than 2 days from the database
    - Sync in-memory networks with the database
    - Remove completed/failed training jobs from memory
    """
    while True:
        try:
            logger.info("Starting automatic cleanup of old networks...")
            deleted_count = delete_old_networks(days=2, model_dir=MODEL_DIR)

            if deleted_count > 0:
                logger.info(f"Cleanup completed: deleted {deleted_count} network(s)")
                sync_active_networks()
            elif deleted_count == 0:
                logger.info("Cleanup completed: no old networks found to delete")
            else:
                logger.error("Cleanup returned error code")

            cleanup_finished_training_jobs()

            logger.info("Next cleanup scheduled in 24 hours")
            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Error during network cleanup: {e}")
            gevent.sleep(3600)


def sync_active_networks() -> None:
    """Drop in-memory networks that no longer exist in the database."""
    saved_ids = {net['network_id'] for net in list_saved_networks(MODEL_DIR)}
    busy_ids = {
        job['network_id'] for job in training_jobs.values()
        if job.get('status') in ('pending', 'training')
    }
    for nid in list(active_networks.keys()):
        if nid not in saved_ids and nid not in busy_ids:
            del active_networks[nid]
            logger.info(f"Removed network {nid} from memory (deleted from database)")


def cleanup_finished_training_jobs() -> None:
    """Remove completed or failed training jobs from memory."""
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task() -> None:
    """
    Start the background cleanup task.

    This function is idempotent - calling it multiple times has no effect.
    """
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_networks_task)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def error_response(message: str, status: int):
    return jsonify({'error': message}), status


def get_active_network(network_id: str) -> Optional[Network]:
    info = active_networks.get(network_id)
    return None if info is None else info['network']


def is_network_training(network_id: str) -> bool:
    return any(
        job['network_id'] == network_id
        and job.get('status') in ('pending', 'training')
        for job in training_jobs.values()
    )


def create_digit_image(sample: Sample, predicted: int, actual: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        sample: Sample holding the normalized pixels and image dimensions
        predicted: The digit the network predicted
        actual: The correct digit

    Returns:
        Base64-encoded PNG image string
    """
    pixels = sample.inputs.to_array().reshape(sample.height, sample.width)

    plt.figure(figsize=(3, 3))
    plt.imshow(pixels, cmap='gray')
    plt.title(f"Predicted: {predicted} | Actual: {actual}")
    plt.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and statistics."""
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in ('pending', 'training')
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training,
        'data_loaded': training_data is not None
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new neural network.

    Request body (optional):
        {
            'layer_sizes': [784, 30, 10],
            'seed': 42,                 # random initialization seed
            'initializer': 'normal'     # or 'zeros'
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    layer_sizes = data.get('layer_sizes', DEFAULT_LAYER_SIZES)
    seed = data.get('seed')
    initializer = data.get('initializer', 'normal')

    if not isinstance(layer_sizes, list) or len(layer_sizes) < 2:
        logger.warning(f"Invalid architecture requested: {layer_sizes}")
        return error_response(
            'Invalid architecture. Must have at least 2 layers.', 400
        )
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
        return error_response('seed must be an integer', 400)

    try:
        net = Network(
            layer_sizes,
            rng=np.random.default_rng(seed),
            initializer=initializer
        )
    except ValueError as e:
        logger.warning(f"Rejected network creation: {e}")
        return error_response(str(e), 400)

    network_id = str(uuid.uuid4())
    active_networks[network_id] = {
        'network': net,
        'architecture': net.sizes,
        'trained': False,
        'accuracy': None
    }

    logger.info(f"Created network {network_id} with architecture {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'status': 'created'
    }), 201


@app.route('/api/networks/import', methods=['POST'])
def import_network():
    """
    Create a network from its text serialization.

    The request body is either the serialized network as plain text or
    JSON of the form {'network_data': '<serialized network>'}.
    """
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        text = data.get('network_data')
    else:
        text = request.get_data(as_text=True)

    if not isinstance(text, str) or not text.strip():
        return error_response('No network data supplied', 400)

    try:
        net = Network.deserialize(text)
    except MalformedStreamError as e:
        logger.warning(f"Rejected network import: {e}")
        return error_response(f'Malformed network data: {e}', 400)

    network_id = str(uuid.uuid4())
    active_networks[network_id] = {
        'network': net,
        'architecture': net.sizes,
        'trained': False,
        'accuracy': None
    }
    save_network(net, network_id, model_dir=MODEL_DIR, trained=False)

    logger.info(f"Imported network {network_id} with architecture {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'status': 'imported'
    }), 201


@app.route('/api/networks/<network_id>/export', methods=['GET'])
def export_network_endpoint(network_id: str):
    """Return the network's parameters in the plain-text format."""
    net = get_active_network(network_id)
    text = net.serialize() if net is not None else export_network(
        network_id, MODEL_DIR
    )

    if text is None:
        logger.warning(f"Export requested for non-existent network: {network_id}")
        return error_response('Network not found', 404)

    return Response(text, mimetype='text/plain'), 200


@app.route('/api/networks/<network_id>/classify', methods=['POST'])
def classify_endpoint(network_id: str):
    """
    Classify an input column.

    Request body:
        {'inputs': [0.0, 0.5, ...]}  # one value per input neuron

    Returns:
        JSON with the network output and the index of the strongest output
    """
    net = get_active_network(network_id)
    if net is None:
        return error_response('Network not found', 404)

    data = request.get_json(silent=True) or {}
    inputs = data.get('inputs')
    if not isinstance(inputs, list) or not inputs:
        return error_response('inputs must be a non-empty list of numbers', 400)

    try:
        output = net.classify(Matrix.column(inputs))
    except DimensionMismatchError as e:
        return error_response(str(e), 400)
    except (TypeError, ValueError):
        return error_response('inputs must be a non-empty list of numbers', 400)

    return jsonify({
        'network_id': network_id,
        'predicted_digit': output.argmax(),
        'network_output': [row[0] for row in output.tolist()]
    }), 200


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body (all optional):
        {
            'epochs': 5,
            'mini_batch_size': 1,
            'learning_rate': 0.3
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return error_response('Network not found', 404)

    if training_data is None or test_data is None:
        return error_response('Training data not available', 503)

    if is_network_training(network_id):
        return error_response('Network is already training', 409)

    data = request.get_json(silent=True) or {}
    epochs = data.get('epochs', 5)
    mini_batch_size = data.get('mini_batch_size', 1)
    learning_rate = data.get('learning_rate', DEFAULT_LEARNING_RATE)

    # Validate training parameters
    if isinstance(epochs, bool) or not isinstance(epochs, int) or epochs < 1:
        return error_response('epochs must be a positive integer', 400)
    if (isinstance(mini_batch_size, bool) or not isinstance(mini_batch_size, int)
            or mini_batch_size < 1):
        return error_response('mini_batch_size must be a positive integer', 400)
    if (isinstance(learning_rate, bool) or not isinstance(learning_rate, (int, float))
            or not learning_rate > 0):
        return error_response('learning_rate must be a positive number', 400)

    job_id = str(uuid.uuid4())

    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={epochs}, batch_size={mini_batch_size}, lr={learning_rate}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(
        train_network_task,
        network_id, job_id, epochs, mini_batch_size, learning_rate
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    epochs: int,
    mini_batch_size: int,
    learning_rate: float
) -> None:
    """
    Background task that trains a neural network.

    Sends progress updates via WebSocket as training progresses.
    """
    net = active_networks[network_id]['network']

    def on_epoch_complete(data: Dict[str, Any]) -> None:
        """Called after each training epoch to send progress updates."""
        progress = (data['epoch'] / data['total_epochs']) * 100

        training_jobs[job_id]['status'] = 'training'
        training_jobs[job_id]['progress'] = progress

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'accuracy': data['accuracy'],
            'loss': data['loss'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress,
            'correct': data['correct'],
            'total': data['total']
        })

    def yield_to_other_tasks() -> None:
        # Lets HTTP requests and socket messages through during training
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")

        results = run_epochs(
            net,
            training_data,
            test_data,
            epochs=epochs,
            learning_rate=learning_rate,
            rng=np.random.default_rng(),
            mini_batch_size=mini_batch_size,
            callback=on_epoch_complete,
            yield_func=yield_to_other_tasks
        )
        accuracy = results[-1].accuracy

        active_networks[network_id]['trained'] = True
        active_networks[network_id]['accuracy'] = accuracy

        training_jobs[job_id]['status'] = 'completed'
        training_jobs[job_id]['accuracy'] = accuracy
        training_jobs[job_id]['progress'] = 100

        save_network(net, network_id, model_dir=MODEL_DIR,
                     trained=True, accuracy=accuracy)

        logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': float(accuracy),
            'progress': 100
        })

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })

    gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return error_response('Training job not found', 404)


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'status': 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    # Get saved networks, excluding duplicates already in memory
    saved_only = []
    for net in list_saved_networks(MODEL_DIR):
        if net['network_id'] not in active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    if is_network_training(network_id):
        return error_response('Network is training', 409)

    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = delete_network(network_id, MODEL_DIR)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return error_response('Network not found', 404)

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all networks that are not training from memory and disk."""
    saved_ids = [net['network_id'] for net in list_saved_networks(MODEL_DIR)]
    all_network_ids = [
        nid for nid in set(active_networks.keys()) | set(saved_ids)
        if not is_network_training(nid)
    ]

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0

    for network_id in all_network_ids:
        if active_networks.pop(network_id, None) is not None:
            deleted_from_memory_count += 1
        if delete_network(network_id, MODEL_DIR):
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


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Manually trigger cleanup of networks older than specified days.

    Request body (optional):
        {'days': 2}  # defaults to 2
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', 2)

    if isinstance(days, bool) or not isinstance(days, (int, float)) or days < 0:
        return error_response('days must be a non-negative number', 400)

    deleted_count = delete_old_networks(days=days, model_dir=MODEL_DIR)
    if deleted_count == -1:
        return error_response('Error occurred during cleanup', 500)

    if deleted_count > 0:
        sync_active_networks()

    logger.info(f"Manual cleanup: deleted {deleted_count} network(s) older than {days} day(s)")

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': f'Successfully deleted {deleted_count} network(s) older than {days} day(s)'
    }), 200


# ============================================================================
# EXAMPLE ENDPOINTS
# ============================================================================

def find_example(network_id: str, correct: bool, max_attempts: int):
    """
    Pick random test images until one is classified correctly (or
    incorrectly) and describe it as a JSON response.
    """
    net = get_active_network(network_id)
    if net is None:
        logger.warning(f"Example requested for non-existent network: {network_id}")
        return error_response('Network not found', 404)

    if not test_data:
        logger.error("Test data not loaded")
        return error_response('Test data not available', 503)

    rng = np.random.default_rng()
    for attempt in range(max_attempts):
        index = int(rng.integers(0, len(test_data)))
        sample = test_data[index]

        output = net.classify(sample.inputs)
        predicted_digit = output.argmax()
        actual_digit = sample.label

        if (predicted_digit == actual_digit) == correct:
            logger.debug(f"Found example on attempt {attempt + 1}")

            return jsonify({
                'network_id': network_id,
                'example_index': index,
                'image_name': sample.name,
                'predicted_digit': predicted_digit,
                'actual_digit': actual_digit,
                'image_data': create_digit_image(sample, predicted_digit, actual_digit),
                'output_weights': net.weights[-1].tolist(),
                'network_output': [row[0] for row in output.tolist()]
            }), 200

    kind = 'successful' if correct else 'unsuccessful'
    logger.warning(f"No {kind} example found after {max_attempts} attempts")
    return error_response(
        f'No {kind} example found after {max_attempts} attempts', 404
    )


@app.route('/api/networks/<network_id>/successful_example', methods=['GET'])
def get_successful_example(network_id: str):
    """Return a random test image the network classifies correctly."""
    return find_example(network_id, correct=True, max_attempts=100)


@app.route('/api/networks/<network_id>/unsuccessful_example', methods=['GET'])
def get_unsuccessful_example(network_id: str):
    """Return a random test image the network classifies incorrectly."""
    return find_example(network_id, correct=False, max_attempts=200)


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    logger.info(f"Starting server at http://localhost:{port}/")

    start_cleanup_task()

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production,
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        raise
