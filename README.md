# ansibleoperator

Map Kubernetes custom resources to Ansible playbooks or roles and run them
through `ansible-runner`.

A *watches file* says which group/version/kind is handled by which playbook or
role, with optional finalizers, extra variables, label selectors and per-kind
tuning. For one run the package prepares an ansible-runner input directory
(extra vars, env vars, settings, cmdline, inventory, playbook), starts
`ansible-runner` in the background, and collects the job events it posts back
over a local unix-socket event API.

## Installation

```
pip install .
```

`ansible-runner` must be on `PATH` for runs to start. The event API uses unix
sockets, so a POSIX system is needed.

## Command line

```
ansible-operator version
ansible-operator --help
ansible-operator run --help
```

`ansible-operator version` prints the operator version, commit, Kubernetes
version, Python version, OS and machine architecture.

`ansible-operator run` checks a configuration: it loads and validates the
watches file, exports `ANSIBLE_ROLES_PATH` / `ANSIBLE_COLLECTIONS_PATH` when
given, builds a runner for every watch and logs what it configured. It exits
with status 1 if anything fails. Its options are `--watches-file` (default
`./watches.yaml`), `--max-concurrent-reconciles`, `--ansible-verbosity`,
`--ansible-args`, `--ansible-roles-path`, `--ansible-collections-path`,
`--ansible-log-events` (`Tasks`, `Everything` or `Nothing`) and
`--reconcile-period` (a duration such as `10h` or `1m30s`). The global
`--verbose` option, placed before the command, turns on debug logging.
`WATCH_NAMESPACE` (comma separated) and `ANSIBLE_DEBUG_LOGS` are read and
logged.

## Library use

Load a watches file with `ansibleoperator.watches.load`; `$VAR` and `${VAR}`
references are replaced from the environment and left as `${VAR}` when the
variable is not set:

```python
from ansibleoperator.watches import load

watches = load("watches.yaml", max_reconciler=1, ansible_verbosity=2)
for watch in watches:
    print(watch.gvk, watch.playbook or watch.role)
```

Each entry is checked: a version and a kind are required, the playbook or role
must exist, GVKs must be unique, and a finalizer needs a name plus an existing
playbook or role, or vars. Problems raise `WatchError`. Relative playbook
paths are taken from the current directory; roles are searched for in
collections (for `namespace.collection.role` names), in `ANSIBLE_ROLES_PATH`
and in `./roles` — `possible_role_paths` lists the candidates.

Per-kind settings can be overridden from the environment, for a kind
`Example` in group `app.example.com`:

- `MAX_CONCURRENT_RECONCILES_EXAMPLE_APP_EXAMPLE_COM` (or the older
  `WORKER_EXAMPLE_APP_EXAMPLE_COM`); values of zero or less fall back to the
  default
- `ANSIBLE_VERBOSITY_EXAMPLE_APP_EXAMPLE_COM`; values outside 0 to 7 fall
  back to the default

Run a custom resource (a plain dict) through its playbook or role:

```python
from ansibleoperator.runner import Runner

runner = Runner.from_watch(watches[0], "")
result = runner.run("job-1", custom_resource, "/path/to/kubeconfig")
for event in result.events():
    if event.event == "runner_on_failed" and not event.ignore_error():
        print(event.failed_playbook_message())
print(result.stdout())
```

`Runner.run` raises `FileNotFoundError` when `ansible-runner` is not
installed and `RuntimeError` for a resource being deleted without this
runner's finalizer. The input directory is written under
`/tmp/ansible-operator/runner/<group>/<version>/<kind>/<namespace>/<name>`,
and after each run `artifacts/latest` is linked to that run's artifacts.

`Runner.make_parameters` builds the extra vars: the resource's spec
(snake-cased unless `snakeCaseParameters: false`), `ansible_operator_meta`
with name and namespace, the whole object under `_<group>_<kind>` and its spec
under `_<group>_<kind>_spec` (dots and dashes turned into underscores), then
the watch vars and, on a finalizer run, the finalizer vars. With
`markUnsafe: true` every string in the spec values is wrapped as
`{"__ansible_unsafe": value}` (see `mark_unsafe`).

Two annotations on a resource override the watch for that resource:

- `ansible.sdk.operatorframework.io/max-runner-artifacts`
- `ansible.sdk.operatorframework.io/verbosity`

Lower-level pieces can be used on their own: `ansibleoperator.events`
(`JobEvent`, `StatusJobEvent`, `StatsEventData` and the event time format),
`ansibleoperator.eventapi.EventReceiver` (the HTTP event API; use it as a
context manager or call `close`), and `ansibleoperator.inputdir.InputDir`.

For tests, `ansibleoperator.fake.FakeRunner` replays a fixed list of
`JobEvent`s and a canned stdout, or raises a configured error.

## What this package does not do

It does not connect to a Kubernetes cluster. There is no controller that
watches resources and reconciles them, no API proxy, no status updates, no
health or metrics endpoints and no leader election: `ansible-operator run`
only validates and reports the configuration. Reconciling a resource means
calling `Runner.run` yourself with the resource and a kubeconfig path.

## Running the tests

```
pip install .[test]
pytest
```