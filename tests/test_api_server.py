"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST API, using the Flask test client. Background training
and WebSocket emits are recorded instead of being run.
"""

import pytest

from nnet import api_server
from nnet.matrix import Matrix
from nnet.model_persistence import load_network, save_network
from nnet.network import Network
from nnet.trainer import load_samples, read_image_list


class Recorder:
    """Stands in for a SocketIO method and remembers its calls."""

    def __init__(self):
        self.calls = []

    def __call__(self, *args, **kwargs):
        self.calls.append((args, kwargs))


@pytest.fixture
def model_dir(tmp_path):
    path = tmp_path / "models"
    path.mkdir()
    return str(path)


@pytest.fixture
def server(monkeypatch, model_dir):
    """Isolate the server's global state."""
    monkeypatch.setattr(api_server, 'MODEL_DIR', model_dir)
    monkeypatch.setattr(api_server, 'active_networks', {})
    monkeypatch.setattr(api_server, 'training_jobs', {})
    monkeypatch.setattr(api_server, 'training_data', None)
    monkeypatch.setattr(api_server, 'test_data', None)
    return api_server


@pytest.fixture
def emitted(server, monkeypatch):
    recorder = Recorder()
    monkeypatch.setattr(server.socketio, 'emit', recorder)
    return recorder


@pytest.fixture
def started(server, monkeypatch):
    recorder = Recorder()
    monkeypatch.setattr(server.socketio, 'start_background_task', recorder)
    return recorder


@pytest.fixture
def client(server, emitted, started):
    server.app.config['TESTING'] = True
    with server.app.test_client() as client:
        yield client


@pytest.fixture
def with_data(server, monkeypatch, image_dir):
    """Load the 2x2 image set as the server's training and test data."""
    path = str(image_dir)
    train = load_samples(path, read_image_list(str(image_dir / "TrainingSetList.txt")),
                         classes=2)
    test = load_samples(path, read_image_list(str(image_dir / "TestingSetList.txt")),
                        classes=2)
    monkeypatch.setattr(server, 'training_data', train)
    monkeypatch.setattr(server, 'test_data', test)
    return server


def add_network(server, net, network_id="net-1"):
    server.active_networks[network_id] = {
        'network': net,
        'architecture': net.sizes,
        'trained': False,
        'accuracy': None
    }
    return network_id


@pytest.mark.unit
class TestStatus:
    """Test the status endpoint."""

    def test_status(self, client):
        response = client.get('/api/status')
        assert response.status_code == 200
        assert response.json == {
            'status': 'online',
            'active_networks': 0,
            'training_jobs': 0,
            'data_loaded': False
        }

    def test_status_with_data(self, client, with_data):
        assert client.get('/api/status').json['data_loaded'] is True


@pytest.mark.unit
class TestCreateNetwork:
    """Test network creation."""

    def test_create_with_architecture(self, client, server):
        response = client.post('/api/networks',
                               json={'layer_sizes': [4, 3, 2], 'seed': 5})

        assert response.status_code == 201
        network_id = response.json['network_id']
        assert response.json['architecture'] == [4, 3, 2]
        assert server.active_networks[network_id]['network'].sizes == [4, 3, 2]

    def test_create_default_architecture(self, client):
        response = client.post('/api/networks')
        assert response.status_code == 201
        assert response.json['architecture'] == [784, 30, 10]

    def test_seeded_creation_is_reproducible(self, client, server):
        first = client.post('/api/networks', json={'layer_sizes': [3, 2], 'seed': 9})
        second = client.post('/api/networks', json={'layer_sizes': [3, 2], 'seed': 9})
        nets = [server.active_networks[r.json['network_id']]['network']
                for r in (first, second)]
        assert nets[0] == nets[1]

    @pytest.mark.parametrize("body", [
        {'layer_sizes': [4]},
        {'layer_sizes': [4, -1]},
        {'layer_sizes': [4, 2], 'initializer': 'uniform'},
        {'layer_sizes': [4, 2], 'seed': 'abc'},
        {'layer_sizes': 'big'},
    ])
    def test_invalid_requests(self, client, server, body):
        response = client.post('/api/networks', json=body)
        assert response.status_code == 400
        assert 'error' in response.json
        assert server.active_networks == {}


@pytest.mark.unit
class TestClassify:
    """Test the classify endpoint."""

    def test_classify(self, client, server, pattern_network):
        network_id = add_network(server, pattern_network)

        response = client.post(f'/api/networks/{network_id}/classify',
                               json={'inputs': [0.0, 1.0, 0.0, 1.0]})

        assert response.status_code == 200
        assert response.json['predicted_digit'] == 1
        assert len(response.json['network_output']) == 2

    def test_wrong_input_length(self, client, server, pattern_network):
        network_id = add_network(server, pattern_network)
        response = client.post(f'/api/networks/{network_id}/classify',
                               json={'inputs': [1.0, 0.0]})
        assert response.status_code == 400

    def test_nested_inputs(self, client, server, pattern_network):
        network_id = add_network(server, pattern_network)
        response = client.post(f'/api/networks/{network_id}/classify',
                               json={'inputs': [[0.0, 1.0, 0.0, 1.0]]})
        assert response.status_code == 400

    def test_non_numeric_inputs(self, client, server, pattern_network):
        network_id = add_network(server, pattern_network)
        response = client.post(f'/api/networks/{network_id}/classify',
                               json={'inputs': ['a', 'b', 'c', 'd']})
        assert response.status_code == 400

    def test_unknown_network(self, client):
        response = client.post('/api/networks/missing/classify',
                               json={'inputs': [1.0]})
        assert response.status_code == 404


@pytest.mark.unit
class TestImportExport:
    """Test moving networks in and out as text."""

    def test_export_active_network(self, client, server, pattern_network):
        network_id = add_network(server, pattern_network)

        response = client.get(f'/api/networks/{network_id}/export')

        assert response.status_code == 200
        assert response.mimetype == 'text/plain'
        assert response.get_data(as_text=True) == pattern_network.serialize()

    def test_export_saved_network(self, client, model_dir, pattern_network):
        save_network(pattern_network, "saved-net", model_dir=model_dir)
        response = client.get('/api/networks/saved-net/export')
        assert response.get_data(as_text=True) == pattern_network.serialize()

    def test_export_unknown_network(self, client):
        assert client.get('/api/networks/missing/export').status_code == 404

    def test_import_plain_text(self, client, server, model_dir, pattern_network):
        response = client.post('/api/networks/import',
                               data=pattern_network.serialize(),
                               content_type='text/plain')

        assert response.status_code == 201
        network_id = response.json['network_id']
        assert response.json['architecture'] == [4, 2]
        assert server.active_networks[network_id]['network'] == pattern_network
        assert load_network(network_id, model_dir) == pattern_network

    def test_import_json(self, client, pattern_network):
        response = client.post('/api/networks/import',
                               json={'network_data': pattern_network.serialize()})
        assert response.status_code == 201

    @pytest.mark.parametrize("text", [
        "",
        "1 2\n4",
        "not a network",
        "1 2\n1 1000000000000\n1000000000000 1\n0\n",
    ])
    def test_import_malformed(self, client, server, text):
        response = client.post('/api/networks/import', data=text,
                               content_type='text/plain')
        assert response.status_code == 400
        assert server.active_networks == {}


@pytest.mark.integration
class TestTraining:
    """Test starting and running background training."""

    def test_train_starts_background_job(self, client, with_data, started):
        network_id = add_network(with_data, Network([4, 3, 2]))

        response = client.post(f'/api/networks/{network_id}/train',
                               json={'epochs': 2, 'learning_rate': 1.0})

        assert response.status_code == 202
        job_id = response.json['job_id']
        assert with_data.training_jobs[job_id]['status'] == 'pending'
        (args, _), = started.calls
        assert args == (with_data.train_network_task, network_id, job_id, 2, 1, 1.0)

    def test_training_task_reports_and_saves(self, client, with_data, model_dir,
                                             started, emitted):
        """Test that a training run emits progress and persists the network."""
        net = Network([4, 3, 2])
        network_id = add_network(with_data, net)
        response = client.post(f'/api/networks/{network_id}/train',
                               json={'epochs': 3, 'learning_rate': 1.0})
        job_id = response.json['job_id']
        (args, _), = started.calls

        args[0](*args[1:])

        events = [call_args[0] for call_args, _ in emitted.calls]
        assert events == ['training_update'] * 3 + ['training_complete']
        updates = [call_args[1] for call_args, _ in emitted.calls[:3]]
        assert [u['epoch'] for u in updates] == [1, 2, 3]
        assert updates[-1]['progress'] == 100

        job = client.get(f'/api/training/{job_id}').json
        assert job['status'] == 'completed'
        assert job['progress'] == 100
        assert load_network(network_id, model_dir) == net
        assert with_data.active_networks[network_id]['trained'] is True

    def test_training_task_failure(self, client, with_data, started, emitted):
        """Test that a network that does not fit the data fails its job."""
        network_id = add_network(with_data, Network([9, 2]))
        response = client.post(f'/api/networks/{network_id}/train', json={})
        job_id = response.json['job_id']
        (args, _), = started.calls

        args[0](*args[1:])

        (event, payload), _ = emitted.calls[-1]
        assert event == 'training_error'
        assert payload['job_id'] == job_id
        assert with_data.training_jobs[job_id]['status'] == 'failed'

    def test_train_unknown_network(self, client, with_data):
        response = client.post('/api/networks/missing/train', json={})
        assert response.status_code == 404

    def test_train_without_data(self, client, server):
        network_id = add_network(server, Network([4, 2]))
        response = client.post(f'/api/networks/{network_id}/train', json={})
        assert response.status_code == 503

    @pytest.mark.parametrize("body", [
        {'epochs': 0},
        {'epochs': 'ten'},
        {'mini_batch_size': 0},
        {'learning_rate': -0.5},
        {'epochs': True},
        {'mini_batch_size': True},
        {'learning_rate': True},
    ])
    def test_invalid_training_parameters(self, client, with_data, started, body):
        network_id = add_network(with_data, Network([4, 2]))
        response = client.post(f'/api/networks/{network_id}/train', json=body)
        assert response.status_code == 400
        assert started.calls == []

    def test_already_training(self, client, with_data):
        network_id = add_network(with_data, Network([4, 2]))
        client.post(f'/api/networks/{network_id}/train', json={})
        response = client.post(f'/api/networks/{network_id}/train', json={})
        assert response.status_code == 409

    def test_unknown_job(self, client):
        assert client.get('/api/training/missing').status_code == 404


@pytest.mark.unit
class TestListAndDelete:
    """Test listing and deleting networks."""

    def test_list_memory_and_saved(self, client, server, model_dir, pattern_network):
        add_network(server, pattern_network, "in-memory")
        save_network(pattern_network, "on-disk", model_dir=model_dir)

        networks = client.get('/api/networks').json['networks']

        status = {net['network_id']: net['status'] for net in networks}
        assert status == {'in-memory': 'in_memory', 'on-disk': 'saved'}

    def test_delete_network(self, client, server, model_dir, pattern_network):
        add_network(server, pattern_network, "doomed")
        save_network(pattern_network, "doomed", model_dir=model_dir)

        response = client.delete('/api/networks/doomed')

        assert response.status_code == 200
        assert response.json['deleted_from_memory'] is True
        assert response.json['deleted_from_disk'] is True
        assert client.delete('/api/networks/doomed').status_code == 404

    def test_delete_all_networks(self, client, server, model_dir, pattern_network):
        add_network(server, pattern_network, "a")
        save_network(pattern_network, "b", model_dir=model_dir)

        response = client.delete('/api/networks')

        assert response.json['deleted_count'] == 2
        assert server.active_networks == {}
        assert client.get('/api/networks').json['networks'] == []

    def test_cleanup_endpoint(self, client, model_dir, pattern_network):
        save_network(pattern_network, "fresh", model_dir=model_dir)

        response = client.post('/api/networks/cleanup', json={'days': 2})

        assert response.status_code == 200
        assert response.json['deleted_count'] == 0
        assert client.post('/api/networks/cleanup',
                           json={'days': -1}).status_code == 400


@pytest.mark.integration
class TestExamples:
    """Test the successful and unsuccessful example endpoints."""

    def test_successful_example(self, client, with_data, pattern_network):
        network_id = add_network(with_data, pattern_network)

        response = client.get(f'/api/networks/{network_id}/successful_example')

        assert response.status_code == 200
        body = response.json
        assert body['predicted_digit'] == body['actual_digit']
        assert body['image_name'].endswith('.pgm')
        assert body['image_data']
        assert len(body['network_output']) == 2

    def test_unsuccessful_example(self, client, with_data, pattern_network):
        flipped = Network.from_parameters(
            pattern_network.biases,
            [Matrix.from_rows(list(reversed(pattern_network.weights[0].tolist())))]
        )
        network_id = add_network(with_data, flipped)

        response = client.get(f'/api/networks/{network_id}/unsuccessful_example')

        assert response.status_code == 200
        assert response.json['predicted_digit'] != response.json['actual_digit']

    def test_no_unsuccessful_example(self, client, with_data, pattern_network):
        network_id = add_network(with_data, pattern_network)
        response = client.get(f'/api/networks/{network_id}/unsuccessful_example')
        assert response.status_code == 404

    def test_example_without_data(self, client, server, pattern_network):
        network_id = add_network(server, pattern_network)
        response = client.get(f'/api/networks/{network_id}/successful_example')
        assert response.status_code == 503
