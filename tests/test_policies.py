import random

import pytest

from assetcache import AlwaysTrigger, CachePolicy, NeverTrigger, RandomTrigger


def test_default_policy():
    policy = CachePolicy()

    assert policy.max_items == 1000
    assert policy.prune_chunk == 50
    assert policy.maintain_when_idle
    assert isinstance(policy.maintenance_trigger, RandomTrigger)
    assert policy.maintenance_trigger.probability == 0.05


@pytest.mark.parametrize("field", ["max_items", "prune_chunk"])
@pytest.mark.parametrize("value", [0, -1])
def test_policy_rejects_non_positive_bounds(field, value):
    with pytest.raises(ValueError):
        CachePolicy(**{field: value})


def test_fixed_triggers():
    assert AlwaysTrigger().should_maintain()
    assert not NeverTrigger().should_maintain()


def test_random_trigger_rate():
    trigger = RandomTrigger(probability=0.05, rng=random.Random(1234))

    fired = sum(trigger.should_maintain() for _ in range(10_000))

    assert 350 < fired < 650


@pytest.mark.parametrize("probability, expected", [(0.0, False), (1.0, True)])
def test_random_trigger_bounds(probability, expected):
    trigger = RandomTrigger(probability=probability, rng=random.Random(0))

    assert all(trigger.should_maintain() is expected for _ in range(100))


@pytest.mark.parametrize("probability", [-0.1, 1.5])
def test_random_trigger_rejects_invalid_probability(probability):
    with pytest.raises(ValueError):
        RandomTrigger(probability=probability)
