"""
Unit tests for matrix expansion.
"""

from ci_controller.matrix import expand_matrix


def test_config_without_matrix_keys_is_one_job():
    assert expand_matrix({"language": "ruby"}) == [{"language": "ruby"}]
    assert expand_matrix({}) == [{}]


def test_scalar_values_are_single_axes():
    jobs = expand_matrix({"rvm": "3.2", "env": "FOO=bar", "script": "rake"})

    assert jobs == [{"rvm": "3.2", "env": "FOO=bar", "script": "rake"}]


def test_cross_product_follows_key_order():
    jobs = expand_matrix({"env": ["A=1", "B=2"], "jdk": ["openjdk17", "openjdk21"]})

    assert [(job["jdk"], job["env"]) for job in jobs] == [
        ("openjdk17", "A=1"),
        ("openjdk17", "B=2"),
        ("openjdk21", "A=1"),
        ("openjdk21", "B=2"),
    ]


def test_env_rows_stay_rows():
    jobs = expand_matrix({"env": [["A=1", "G=1"], ["B=2", "G=1"]], "global_env": ["G=1"]})

    assert jobs == [
        {"env": ["A=1", "G=1"], "global_env": ["G=1"]},
        {"env": ["B=2", "G=1"], "global_env": ["G=1"]},
    ]


def test_job_configs_do_not_share_state():
    jobs = expand_matrix({"rvm": ["2.7", "3.2"], "notifications": {"email": []}})

    jobs[0]["notifications"]["email"].append("dev@example.com")

    assert jobs[1]["notifications"] == {"email": []}
