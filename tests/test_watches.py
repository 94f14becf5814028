import os
from datetime import timedelta
from pathlib import Path

import pytest

from ansibleoperator import watches
from ansibleoperator.watches import (
    Finalizer,
    GroupVersionKind,
    LabelSelector,
    LabelSelectorRequirement,
    WatchError,
    ansible_verbosity,
    load,
    max_concurrent_reconciles,
    new_watch,
    parse_duration,
    possible_role_paths,
    replace_env_variables,
    verify_ansible_path,
    verify_gvk,
)

CACHE_GVK = GroupVersionKind("cache.example.com", "v1alpha1", "MemCacheService")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in list(os.environ):
        if name.startswith(("WORKER_", "MAX_CONCURRENT_RECONCILES_", "ANSIBLE_VERBOSITY_")):
            monkeypatch.delenv(name)
    monkeypatch.delenv("ANSIBLE_ROLES_PATH", raising=False)
    monkeypatch.delenv("ANSIBLE_COLLECTIONS_PATH", raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))


@pytest.fixture
def project(tmp_path, monkeypatch):
    root = tmp_path / "project"
    root.mkdir()
    (root / "playbook.yml").write_text("- hosts: localhost\n")
    (root / "roles" / "role").mkdir(parents=True)
    (root / "ansible_collections" / "nameSpace" / "collection" / "roles" / "someRole").mkdir(
        parents=True
    )
    monkeypatch.chdir(root)
    return Path.cwd()


def write(root, text, name="watches.yaml"):
    path = root / name
    path.write_text(text)
    return path


VALID = """
- version: v1alpha1
  group: app.example.com
  kind: NoFinalizer
  playbook: playbook.yml
  reconcilePeriod: 2s
- version: v1alpha1
  group: app.example.com
  kind: WithUnsafeMarked
  playbook: playbook.yml
  reconcilePeriod: 2s
  markUnsafe: true
- version: v1alpha1
  group: app.example.com
  kind: Playbook
  playbook: playbook.yml
  snakeCaseParameters: false
  finalizer:
    name: app.example.com/finalizer
    role: role
    vars:
      sentinel: finalizer_running
- version: v1alpha1
  group: app.example.com
  kind: WatchClusterScoped
  playbook: playbook.yml
  reconcilePeriod: 2s
  watchClusterScopedResources: true
- version: v1alpha1
  group: app.example.com
  kind: DisableStatus
  playbook: playbook.yml
  manageStatus: false
- version: v1alpha1
  group: app.example.com
  kind: MaxConcurrentReconcilesEnv
  role: role
- version: v1alpha1
  group: app.example.com
  kind: AnsibleVerbosityEnv
  role: role
- version: v1alpha1
  group: app.example.com
  kind: WatchWithVars
  role: role
  vars:
    sentinel: reconciling
- version: v1alpha1
  group: app.example.com
  kind: AnsibleCollectionEnvTest
  role: nameSpace.collection.someRole
- version: v1alpha1
  group: app.example.com
  kind: AnsibleBlacklistTest
  role: role
  blacklist:
    - group: app.example.com/1
      version: v1alpha1.1
      kind: AnsibleBlacklistTest_1
    - group: app.example.com/2
      version: v1alpha1.2
      kind: AnsibleBlacklistTest_2
- version: v1alpha1
  group: app.example.com
  kind: AnsibleSelectorTest
  role: role
  selector:
    matchLabels:
      matchLabel_1: matchLabel_1
    matchExpressions:
      - key: matchexpression_key
        operator: matchexpression_operator
        values: [value1, value2]
"""


@pytest.fixture
def loaded(project, monkeypatch):
    monkeypatch.setenv("WORKER_MAXCONCURRENTRECONCILESENV_APP_EXAMPLE_COM", "4")
    monkeypatch.setenv("ANSIBLE_VERBOSITY_ANSIBLEVERBOSITYENV_APP_EXAMPLE_COM", "4")
    monkeypatch.setenv("ANSIBLE_COLLECTIONS_PATH", str(project))
    result = load(write(project, VALID), 1, 2)
    return {w.gvk.kind: w for w in result}, project


def test_gvk_string():
    assert str(GroupVersionKind("app.example.com", "v1", "Foo")) == "app.example.com/v1, Kind=Foo"


def test_new_watch_defaults():
    gvk = GroupVersionKind("app.example.com", "v1alpha1", "Example")
    watch = new_watch(gvk, "", "", None, None)
    assert watch.gvk == gvk
    assert watch.max_runner_artifacts == 20
    assert watch.max_concurrent_reconciles == watches.MAX_CONCURRENT_RECONCILES_DEFAULT
    assert watch.reconcile_period == timedelta(0)
    assert watch.manage_status is True
    assert watch.watch_dependent_resources is True
    assert watch.snake_case_parameters is True
    assert watch.mark_unsafe is False
    assert watch.watch_cluster_scoped_resources is False
    assert watch.ansible_verbosity == 2
    with pytest.raises(WatchError, match="must specify Role or Playbook"):
        watch.validate()


def test_load_count_and_order(loaded):
    by_kind, _ = loaded
    assert list(by_kind) == [
        "NoFinalizer",
        "WithUnsafeMarked",
        "Playbook",
        "WatchClusterScoped",
        "DisableStatus",
        "MaxConcurrentReconcilesEnv",
        "AnsibleVerbosityEnv",
        "WatchWithVars",
        "AnsibleCollectionEnvTest",
        "AnsibleBlacklistTest",
        "AnsibleSelectorTest",
    ]


def test_load_playbook_watch(loaded):
    by_kind, root = loaded
    watch = by_kind["NoFinalizer"]
    assert watch.playbook == str(root / "playbook.yml")
    assert watch.reconcile_period == timedelta(seconds=2)
    assert watch.manage_status is True
    assert watch.watch_dependent_resources is True
    assert watch.snake_case_parameters is True
    assert watch.mark_unsafe is False
    assert watch.max_concurrent_reconciles == 1
    assert watch.ansible_verbosity == 2
    assert watch.max_runner_artifacts == 20


def test_load_flags(loaded):
    by_kind, _ = loaded
    assert by_kind["WithUnsafeMarked"].mark_unsafe is True
    assert by_kind["Playbook"].snake_case_parameters is False
    assert by_kind["WatchClusterScoped"].watch_cluster_scoped_resources is True
    assert by_kind["DisableStatus"].manage_status is False


def test_load_finalizer(loaded):
    by_kind, root = loaded
    finalizer = by_kind["Playbook"].finalizer
    assert finalizer.name == "app.example.com/finalizer"
    assert finalizer.role == str(root / "roles" / "role")
    assert finalizer.vars == {"sentinel": "finalizer_running"}


def test_load_env_overrides(loaded):
    by_kind, _ = loaded
    assert by_kind["MaxConcurrentReconcilesEnv"].max_concurrent_reconciles == 4
    assert by_kind["AnsibleVerbosityEnv"].ansible_verbosity == 4


def test_load_roles_and_vars(loaded):
    by_kind, root = loaded
    assert by_kind["WatchWithVars"].role == str(root / "roles" / "role")
    assert by_kind["WatchWithVars"].vars == {"sentinel": "reconciling"}
    assert by_kind["AnsibleCollectionEnvTest"].role == str(
        root / "ansible_collections" / "nameSpace" / "collection" / "roles" / "someRole"
    )


def test_load_blacklist_and_selector(loaded):
    by_kind, _ = loaded
    assert by_kind["AnsibleBlacklistTest"].blacklist == [
        GroupVersionKind("app.example.com/1", "v1alpha1.1", "AnsibleBlacklistTest_1"),
        GroupVersionKind("app.example.com/2", "v1alpha1.2", "AnsibleBlacklistTest_2"),
    ]
    assert by_kind["AnsibleSelectorTest"].selector == LabelSelector(
        match_labels={"matchLabel_1": "matchLabel_1"},
        match_expressions=[
            LabelSelectorRequirement(
                "matchexpression_key", "matchexpression_operator", ["value1", "value2"]
            )
        ],
    )


def test_load_with_roles_path_env(project, monkeypatch):
    elsewhere = project.parent / "shared"
    (elsewhere / "roles" / "shared_role").mkdir(parents=True)
    monkeypatch.setenv("ANSIBLE_ROLES_PATH", f"path/invalid:/path/invalid/myroles:{elsewhere}")
    path = write(project, "- version: v1\n  group: g.example.com\n  kind: K\n  role: shared_role\n")
    result = load(path, 1, 2)
    assert result[0].role == str(elsewhere / "roles" / "shared_role")


def test_load_keys_are_case_insensitive(project):
    path = write(
        project,
        "- Version: v1\n  GROUP: g.example.com\n  kind: K\n  playbook: playbook.yml\n"
        "  MaxRunnerArtifacts: 5\n",
    )
    result = load(path, 1, 2)
    assert result[0].gvk == GroupVersionKind("g.example.com", "v1", "K")
    assert result[0].max_runner_artifacts == 5


def test_load_empty_file(project):
    assert load(write(project, ""), 1, 2) == []


def test_load_missing_file(project):
    with pytest.raises(FileNotFoundError):
        load(project / "please_dont_create_me.yaml", 1, 2)


HEADER = "- version: v1alpha1\n  group: app.example.com\n  kind: Example\n"


@pytest.mark.parametrize(
    "text",
    [
        HEADER + "  playbook: playbook.yml\n" + HEADER + "  playbook: playbook.yml\n",
        "- version: v1\n  kind: [unclosed\n",
        "version: v1\nkind: NotAList\n",
        HEADER + "  playbook: missing.yml\n",
        HEADER + "  role: missing_role\n",
        HEADER + "  playbook: playbook.yml\n  finalizer:\n    name: f\n    playbook: missing.yml\n",
        HEADER + "  playbook: playbook.yml\n  finalizer:\n    playbook: playbook.yml\n",
        HEADER + "  playbook: playbook.yml\n  finalizer:\n    name: f\n    role: missing_role\n",
        HEADER + "  playbook: playbook.yml\n  finalizer:\n    name: f\n",
        HEADER + "  playbook: playbook.yml\n  reconcilePeriod: 2z\n",
        HEADER + "  playbook: playbook.yml\n  reconcilePeriod: 5\n",
        HEADER + "  playbook: playbook.yml\n  manageStatus: 'true'\n",
        HEADER + "  role: bad.collection.role\n",
        "- group: app.example.com\n  kind: Example\n  playbook: playbook.yml\n",
        "- group: app.example.com\n  version: v1\n  playbook: playbook.yml\n",
    ],
    ids=[
        "duplicate_gvk",
        "invalid_yaml",
        "not_a_list",
        "invalid_playbook_path",
        "invalid_role_path",
        "invalid_finalizer_playbook_path",
        "finalizer_without_name",
        "invalid_finalizer_role_path",
        "finalizer_no_vars",
        "invalid_duration",
        "numeric_duration",
        "invalid_status",
        "invalid_collection",
        "missing_version",
        "missing_kind",
    ],
)
def test_load_errors(project, text):
    with pytest.raises(WatchError):
        load(write(project, text), 1, 2)


def test_duplicate_gvk_message(project):
    text = HEADER + "  playbook: playbook.yml\n" + HEADER + "  playbook: playbook.yml\n"
    with pytest.raises(WatchError, match="duplicate GVK: app.example.com/v1alpha1, Kind=Example"):
        load(write(project, text), 1, 2)


def test_finalizer_with_vars_needs_no_path(project):
    text = HEADER + "  playbook: playbook.yml\n  finalizer:\n    name: f\n    vars:\n      state: absent\n"
    result = load(write(project, text), 1, 2)
    assert result[0].finalizer == Finalizer(name="f", vars={"state": "absent"})


@pytest.mark.parametrize(
    "env, expected",
    [
        ({}, 1),
        ({"WORKER_MEMCACHESERVICE_CACHE_EXAMPLE_COM": "0"}, 1),
        ({"WORKER_MEMCACHESERVICE_CACHE_EXAMPLE_COM": "3"}, 3),
        ({"MAX_CONCURRENT_RECONCILES_MEMCACHESERVICE_CACHE_EXAMPLE_COM": "2"}, 2),
        (
            {
                "MAX_CONCURRENT_RECONCILES_MEMCACHESERVICE_CACHE_EXAMPLE_COM": "3",
                "WORKER_MEMCACHESERVICE_CACHE_EXAMPLE_COM": "1",
            },
            3,
        ),
        ({"MAX_CONCURRENT_RECONCILES_MEMCACHESERVICE_CACHE_EXAMPLE_COM": "many"}, 1),
    ],
)
def test_max_concurrent_reconciles(monkeypatch, env, expected):
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    assert max_concurrent_reconciles(CACHE_GVK, 1) == expected


@pytest.mark.parametrize(
    "value, expected",
    [(None, 1), ("-1", 1), ("8", 1), ("3", 3), ("0", 0), ("7", 7), ("loud", 1)],
)
def test_ansible_verbosity(monkeypatch, value, expected):
    if value is not None:
        monkeypatch.setenv("ANSIBLE_VERBOSITY_MEMCACHESERVICE_CACHE_EXAMPLE_COM", value)
    assert ansible_verbosity(CACHE_GVK, 1) == expected


def test_possible_role_paths_name(tmp_path):
    wd = str(tmp_path)
    assert possible_role_paths(wd, "Foo") == [os.path.join(wd, "roles", "Foo")]
    assert possible_role_paths(wd, "relative/Foo") == [os.path.join(wd, "roles", "relative", "Foo")]


def test_possible_role_paths_absolute_and_empty(tmp_path):
    assert possible_role_paths(str(tmp_path), "/abs/role") == ["/abs/role"]
    assert possible_role_paths(str(tmp_path), "") == [""]


def test_possible_role_paths_roles_env(tmp_path, monkeypatch):
    wd = str(tmp_path)
    monkeypatch.setenv("ANSIBLE_ROLES_PATH", "relative:nested/relative:/and/abs")
    assert sorted(possible_role_paths(wd, "Foo")) == sorted(
        [
            os.path.join(wd, "roles", "Foo"),
            "relative/Foo",
            "relative/roles/Foo",
            "nested/relative/Foo",
            "nested/relative/roles/Foo",
            "/and/abs/Foo",
            "/and/abs/roles/Foo",
        ]
    )


def test_possible_role_paths_default_collections(tmp_path):
    wd = str(tmp_path)
    home = os.environ["HOME"]
    assert sorted(possible_role_paths(wd, "myNS.myCol.myRole")) == sorted(
        [
            os.path.join(wd, "roles", "myNS.myCol.myRole"),
            "/usr/share/ansible/collections/ansible_collections/myNS/myCol/roles/myRole",
            os.path.join(home, ".ansible/collections/ansible_collections/myNS/myCol/roles/myRole"),
        ]
    )


def test_possible_role_paths_collections_env(tmp_path, monkeypatch):
    wd = str(tmp_path)
    monkeypatch.setenv("ANSIBLE_COLLECTIONS_PATH", "/my/collections/")
    assert sorted(possible_role_paths(wd, "myNS.myCol.myRole")) == sorted(
        [
            os.path.join(wd, "roles", "myNS.myCol.myRole"),
            "/my/collections/ansible_collections/myNS/myCol/roles/myRole",
        ]
    )


def test_load_replaces_env_vars(project, monkeypatch):
    monkeypatch.setenv("WATCH_PLAYBOOK", str(project / "playbook.yml"))
    monkeypatch.setenv("WATCH_VERSION", "v123")
    monkeypatch.setenv("WATCH_MATCH_LABEL_VAR_NAME", "label123")
    monkeypatch.setenv("WATCH_MATCH_LABEL_VAR_VALUE", "value123")
    monkeypatch.setenv("WATCH_MATCH_EXPRESSIONS_KEY", "key123")
    monkeypatch.delenv("WATCH_UNDEFINED_ENV_VAR", raising=False)
    text = (
        "- version: \"${WATCH_VERSION}\"\n"
        "  group: app.example.com\n"
        "  kind: EnvVars\n"
        "  playbook: \"${WATCH_PLAYBOOK}\"\n"
        "  selector:\n"
        "    matchLabels:\n"
        "      \"${WATCH_MATCH_LABEL_VAR_NAME}\": \"${WATCH_MATCH_LABEL_VAR_VALUE}\"\n"
        "      undefined: \"${WATCH_UNDEFINED_ENV_VAR}\"\n"
        "    matchExpressions:\n"
        "      - key: \"${WATCH_MATCH_EXPRESSIONS_KEY}\"\n"
        "        operator: In\n"
        "        values: [a]\n"
    )
    watch = load(write(project, text), 1, 1)[0]
    assert watch.gvk.group == "app.example.com"
    assert watch.gvk.version == "v123"
    assert watch.selector.match_labels["label123"] == "value123"
    assert watch.selector.match_labels["undefined"] == "${WATCH_UNDEFINED_ENV_VAR}"
    assert watch.selector.match_expressions[0].key == "key123"


def test_replace_env_variables_forms(monkeypatch):
    monkeypatch.setenv("FOO", "x")
    monkeypatch.delenv("UNSET_X", raising=False)
    monkeypatch.delenv("1", raising=False)
    assert replace_env_variables("a $FOO b ${FOO}") == "a x b x"
    assert replace_env_variables("$UNSET_X") == "${UNSET_X}"
    assert replace_env_variables("cost $") == "cost $"
    assert replace_env_variables("a${}b") == "ab"
    assert replace_env_variables("$ x") == "$ x"
    assert replace_env_variables("$12") == "${1}2"


@pytest.mark.parametrize(
    "text, expected",
    [
        ("2s", timedelta(seconds=2)),
        ("0", timedelta(0)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("1.5h", timedelta(minutes=90)),
        ("-1m", timedelta(minutes=-1)),
        ("300ms", timedelta(milliseconds=300)),
        ("1.s", timedelta(seconds=1)),
        ("10us", timedelta(microseconds=10)),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "5", "1x", ".s", "-", "s"])
def test_parse_duration_errors(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_verify_gvk():
    verify_gvk(GroupVersionKind("", "v1", "Kind"))
    with pytest.raises(WatchError, match="version must not be empty"):
        verify_gvk(GroupVersionKind("g", "", "Kind"))
    with pytest.raises(WatchError, match="kind must not be empty"):
        verify_gvk(GroupVersionKind("g", "v1", ""))


def test_verify_ansible_path(tmp_path):
    existing = tmp_path / "play.yml"
    existing.write_text("")
    with pytest.raises(WatchError, match="playbook: .* was not found"):
        verify_ansible_path(str(tmp_path / "nope.yml"), str(existing))
    with pytest.raises(WatchError, match="role: .* was not found"):
        verify_ansible_path("", str(tmp_path / "nope"))
    with pytest.raises(WatchError, match="must specify Role or Playbook"):
        verify_ansible_path("", "")
    assert verify_ansible_path(str(existing), "") is None