import numpy as np
import pytest

import minicnn
from minicnn import DataSpace, Format, FormatError, IndexingError, TrainingConfig, HyperparameterError
from minicnn.datasets import from_graph


def flat(t):
    return t.to_numpy().reshape(-1)


def make_space():
    return DataSpace(
        Format(2),
        Format(1),
        [[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]],
        [[0.0], [1.0], [2.0]],
    )


def test_iterates_in_order_with_views():
    space = make_space()
    examples = list(space)
    assert len(space) == 3
    assert [flat(e.data).tolist() for e in examples] == [[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]]
    assert [e.label[0] for e in examples] == [0.0, 1.0, 2.0]
    assert all(e.data.is_observing and e.label.is_observing for e in examples)


def test_cursor_accessors():
    space = make_space()
    space.iterator_reset()
    assert flat(space.get_next_data()).tolist() == [1.0, 2.0]
    assert space.iterator_next()
    assert space.get_next_label()[0] == 1.0
    assert space.iterator_next()
    assert not space.iterator_next()
    with pytest.raises(IndexingError):
        space.get_next_data()


def test_shuffle_keeps_pairs_together(rng):
    space = make_space()
    space.shuffle(rng)
    pairs = sorted((tuple(flat(e.data)), e.label[0]) for e in space)
    assert pairs == [((1.0, 2.0), 0.0), ((3.0, 4.0), 1.0), ((5.0, 6.0), 2.0)]
    assert sorted(space.shuffle_table.tolist()) == [0, 1, 2]


def test_views_write_into_table():
    space = make_space()
    example = next(iter(space))
    example.data.set_all(0.0)
    assert flat(space.table)[:3].tolist() == [0.0, 0.0, 0.0]


def test_mismatched_sizes_fail():
    with pytest.raises(FormatError):
        DataSpace(Format(2), Format(1), [[1.0, 2.0]], [])
    with pytest.raises(FormatError):
        DataSpace(Format(2), Format(1), [[1.0, 2.0, 3.0]], [[1.0]])


def test_copy_to_device_moves_views():
    space = make_space()
    space.copy_to_device()
    assert space.is_in_device_mode
    example = next(iter(space))
    assert example.data.is_cuda
    assert flat(example.data).tolist() == [1.0, 2.0]
    space.copy_to_host()
    assert not example.data.is_cuda


@pytest.mark.parametrize("name", sorted(minicnn.datasets.keys()))
def test_graph_datasets(name, rng):
    graph = minicnn.datasets[name](20, rng)
    assert len(graph.X) == 20 and len(graph.y) == 20
    space = from_graph(graph)
    assert len(space) == 20
    example = next(iter(space))
    assert example.data.format == Format(2)
    assert example.label.format == Format(1)


def test_training_config_validation():
    TrainingConfig(learning_rate=0.5, batch_size=4, epochs=2).validate()
    for bad in [
        TrainingConfig(learning_rate=0.0),
        TrainingConfig(batch_size=0),
        TrainingConfig(epochs=0),
        TrainingConfig(noise_range=-1.0),
    ]:
        with pytest.raises(HyperparameterError):
            bad.validate()


def test_training_config_seed():
    a = TrainingConfig(seed=7).make_rng().random()
    b = TrainingConfig(seed=7).make_rng().random()
    assert a == b
    assert isinstance(TrainingConfig().make_rng(), np.random.Generator)


def test_graph_labels_follow_their_rule(rng):
    graph = minicnn.datasets["Xor"](50, rng)
    for (a, b), label in zip(graph.X, graph.y):
        assert label == int((a < 0.5 < b) or (b < 0.5 < a))
    graph = minicnn.datasets["Spiral"](20, rng)
    assert graph.y == [0] * 10 + [1] * 10
