"""Tests for matrix expansion."""

import pytest

from matrixci.errors import ConfigError
from matrixci.matrix import combinations, expand
from matrixci.model import InstanceState, Job, Matrix, Step


def _job(axes=(), include=(), exclude=(), job_id="tests"):
    return Job(
        id=job_id,
        steps=(Step(run="true"),),
        matrix=Matrix(axes=tuple(axes), include=tuple(include), exclude=tuple(exclude)),
    )


def test_job_without_matrix_has_one_instance():
    job = Job(id="build", steps=(Step(run="true"),))
    instances = expand(job)

    assert len(instances) == 1
    assert instances[0].id == "build"
    assert dict(instances[0].axes) == {}
    assert instances[0].state == InstanceState.PENDING


def test_single_axis():
    instances = expand(_job(axes=[("mode", ("debug", "release"))]))
    assert [dict(i.axes) for i in instances] == [{"mode": "debug"}, {"mode": "release"}]
    assert [i.id for i in instances] == ["tests[mode=debug]", "tests[mode=release]"]


def test_cross_product_order_is_stable():
    job = _job(axes=[("os", ("linux", "mac")), ("mode", ("debug", "release"))])
    expected = [
        {"os": "linux", "mode": "debug"},
        {"os": "linux", "mode": "release"},
        {"os": "mac", "mode": "debug"},
        {"os": "mac", "mode": "release"},
    ]
    assert combinations(job) == expected
    # Same input, same output.
    assert combinations(job) == expected


def test_instances_are_independent_objects():
    a, b = expand(_job(axes=[("mode", ("debug", "release"))]))
    a.start()
    assert b.state == InstanceState.PENDING


def test_empty_axis_is_config_error():
    with pytest.raises(ConfigError, match="declares no values"):
        expand(_job(axes=[("mode", ())]))


def test_exclude_removes_matching_points():
    job = _job(
        axes=[("os", ("linux", "mac")), ("mode", ("debug", "release"))],
        exclude=[{"os": "mac", "mode": "debug"}],
    )
    assert {"os": "mac", "mode": "debug"} not in combinations(job)
    assert len(combinations(job)) == 3


def test_exclude_everything_is_config_error():
    job = _job(axes=[("mode", ("debug",))], exclude=[{"mode": "debug"}])
    with pytest.raises(ConfigError, match="excludes every combination"):
        combinations(job)


def test_include_extends_matching_points():
    job = _job(
        axes=[("mode", ("debug", "release"))],
        include=[{"mode": "release", "flags": "--release"}],
    )
    assert combinations(job) == [
        {"mode": "debug"},
        {"mode": "release", "flags": "--release"},
    ]


def test_include_without_match_adds_a_point():
    job = _job(axes=[("mode", ("debug",))], include=[{"mode": "profile"}])
    assert combinations(job) == [{"mode": "debug"}, {"mode": "profile"}]


def test_include_only_matrix():
    job = _job(include=[{"target": "x86_64"}, {"target": "aarch64"}])
    assert [i.id for i in expand(job)] == ["tests[target=x86_64]", "tests[target=aarch64]"]


def test_matrix_without_axes_is_config_error():
    with pytest.raises(ConfigError, match="no axes"):
        combinations(_job())


def test_numeric_values_match_string_exclude():
    job = _job(axes=[("version", (1, 2))], exclude=[{"version": "1"}])
    assert combinations(job) == [{"version": 2}]
