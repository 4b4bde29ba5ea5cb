"""Create, track and tear down Kubernetes resources for test suites.

The `KubeResourceManager` remembers every resource it creates on a stack. A
test suite calls `delete_resources` when a test (or test class) finishes and
the manager deletes everything that test created, in reverse order of
creation, and waits until the resources are really gone.

Each thread has its own active cluster context (see `use_context`) and test
scope (see `set_test_context`). The manager keeps a separate stack for every
(context, scope) pair.

"""
import concurrent.futures
import contextlib
import copy
import itertools
import logging
import re
import threading
from pathlib import Path
from typing import (
    Callable, Dict, Iterator, List, Tuple,
)

import tenacity as tc

from kubeframe import k8s, wait, yaml_io
from kubeframe.dtypes import (
    DEFAULT_CONTEXT_NAME, DEFAULT_SCOPE, ClusterConfig, ClusterContext, Config,
    K8sConfig, LifecycleEntry, MetaManifest, ResourceCondition,
)
from kubeframe.errors import (
    AlreadyExists, ClusterError, Conflict, NotFound, TeardownAggregateFailure,
    UnknownContext,
)
from kubeframe.logs import format_resource, log_resource, log_separator
from kubeframe.registry import ResourceTypeRegistry
from kubeframe.resources import ResourceType, default_registry

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("kubeframe")

# Signatures of user supplied functions.
Editor = Callable[[dict], None]
ResourceCallback = Callable[[MetaManifest], None]
ResourceTypeFactory = Callable[[K8sConfig], ResourceType]


def overlay_editor(desired: dict) -> Editor:
    """Return an editor that applies `desired` onto a live manifest.

    All top level fields except `metadata` and `status` replace the live
    ones. Labels and annotations are merged into the live ones.

    """
    def _edit(live: dict) -> None:
        for key, value in desired.items():
            if key in ("metadata", "status"):
                continue
            live[key] = copy.deepcopy(value)

        meta_desired = desired.get("metadata", {})
        meta_live = live.setdefault("metadata", {})
        for field in ("labels", "annotations"):
            if meta_desired.get(field):
                meta_live.setdefault(field, {}).update(meta_desired[field])
    return _edit


def join(futures: List[concurrent.futures.Future]) -> None:
    """Wait for all `futures` and raise the first error (if any)."""
    concurrent.futures.wait(futures)
    for future in futures:
        future.result()


class KubeResourceManager:
    def __init__(self, config: Config | None = None):
        self.config = config if config is not None else Config()

        # Guards the stacks, the contexts and the resource type factories.
        self._lock = threading.RLock()

        # Active cluster context and test scope of each thread.
        self._local = threading.local()

        self._contexts: Dict[str, ClusterContext] = {}
        self._factories: List[ResourceTypeFactory] = []
        self._stacks: Dict[Tuple[str, str], List[LifecycleEntry]] = {}
        self._uids = itertools.count()

        self._create_callbacks: List[ResourceCallback] = []
        self._delete_callbacks: List[ResourceCallback] = []

    # -------------------------------------------------------------------------
    #                               Cluster Contexts
    # -------------------------------------------------------------------------
    def current_context(self) -> str:
        return getattr(self._local, "context", DEFAULT_CONTEXT_NAME)

    def _bind(self, name: str, k8sconfig: K8sConfig) -> ClusterContext:
        """Return a `ClusterContext` with all resource types bound to `k8sconfig`."""
        registry = default_registry(k8sconfig)
        for factory in self._factories:
            registry.register(factory(k8sconfig))
        return ClusterContext(name, k8sconfig, registry)

    def _connect(self, name: str) -> K8sConfig:
        """Create the Kubernetes client for the context `name`.

        Raise `KubeconfigError` for unusable credentials and `ClusterError` if
        the cluster does not respond.

        """
        cluster = self.config.contexts.get(name)
        if cluster is None and name == DEFAULT_CONTEXT_NAME:
            cluster = ClusterConfig(
                kubeconfig=self.config.kubeconfig,
                kubecontext=self.config.kubecontext,
            )
        if cluster is None:
            raise UnknownContext(name)

        if cluster.kubeconfig is not None:
            return k8s.cluster_config(cluster.kubeconfig, cluster.kubecontext)
        if cluster.url and cluster.token:
            return k8s.url_token_config(cluster.url, cluster.token, name)
        raise UnknownContext(name)

    def _context(self, name: str | None = None) -> ClusterContext:
        """Return the `ClusterContext` called `name` (default: the active one).

        Build the context on first use. The connection happens outside the
        lock so that a slow cluster does not block the tracking stacks.

        """
        name = (name or self.current_context()).lower()
        with self._lock:
            ctx = self._contexts.get(name)
        if ctx is not None:
            return ctx

        logit.info(f"Connecting to cluster context <{name}>")
        k8sconfig = self._connect(name)
        with self._lock:
            # Another thread may have connected in the meantime.
            if name not in self._contexts:
                self._contexts[name] = self._bind(name, k8sconfig)
            return self._contexts[name]

    def add_context(self, name: str, k8sconfig: K8sConfig) -> ClusterContext:
        """Register the already configured `k8sconfig` as context `name`."""
        name = name.lower()
        with self._lock:
            ctx = self._bind(name, k8sconfig)
            self._contexts[name] = ctx
        return ctx

    @contextlib.contextmanager
    def use_context(self, name: str) -> Iterator["KubeResourceManager"]:
        """Make `name` the active cluster context of this thread.

        Restore the previous context when the block exits.

        """
        name = name.lower()
        self._context(name)

        previous = self.current_context()
        self._local.context = name
        try:
            yield self
        finally:
            self._local.context = previous

    def kube_client(self) -> K8sConfig:
        return self._context().k8sconfig

    def registry(self) -> ResourceTypeRegistry:
        return self._context().registry

    def set_resource_types(self, *factories: ResourceTypeFactory) -> None:
        """Register additional resource types in all current and future contexts.

        Every factory is a callable that accepts a `K8sConfig` and returns a
        `ResourceType`, eg a `KubeResourceType` subclass.

        """
        with self._lock:
            self._factories.extend(factories)
            for ctx in self._contexts.values():
                for factory in factories:
                    ctx.registry.register(factory(ctx.k8sconfig))

    # -------------------------------------------------------------------------
    #                                 Test Scopes
    # -------------------------------------------------------------------------
    def set_test_context(self, token: str) -> None:
        self._local.scope = token

    def get_test_context(self) -> str:
        return getattr(self._local, "scope", DEFAULT_SCOPE)

    def clean_test_context(self) -> None:
        self._local.scope = DEFAULT_SCOPE

    @contextlib.contextmanager
    def test_scope(self, token: str) -> Iterator["KubeResourceManager"]:
        previous = self.get_test_context()
        self.set_test_context(token)
        try:
            yield self
        finally:
            self.set_test_context(previous)

    # -------------------------------------------------------------------------
    #                                  Callbacks
    # -------------------------------------------------------------------------
    def add_create_callback(self, fun: ResourceCallback) -> None:
        self._create_callbacks.append(fun)

    def add_delete_callback(self, fun: ResourceCallback) -> None:
        self._delete_callbacks.append(fun)

    # -------------------------------------------------------------------------
    #                                Tracking Stacks
    # -------------------------------------------------------------------------
    def _stack_key(self) -> Tuple[str, str]:
        return (self.current_context(), self.get_test_context())

    def _find(self, meta: MetaManifest) -> Tuple[Tuple[str, str], int] | None:
        """Return the stack and index of the entry for `meta` in the active context."""
        context = self.current_context()
        with self._lock:
            for key, stack in self._stacks.items():
                if key[0] != context:
                    continue
                for idx, entry in enumerate(stack):
                    if entry.meta is not None and entry.meta.key == meta.key:
                        return key, idx
        return None

    def _track(self, meta: MetaManifest, manifest: dict | None) -> LifecycleEntry:
        """Push an entry for `meta` or refresh the snapshot of an existing one."""
        snapshot = copy.deepcopy(manifest)
        with self._lock:
            found = self._find(meta)
            if found is not None:
                key, idx = found
                entry = self._stacks[key][idx]._replace(manifest=snapshot)
                self._stacks[key][idx] = entry
                logit.debug(f"Refreshed tracking entry {entry.uid} for {meta.key}")
                return entry

            entry = LifecycleEntry(next(self._uids), meta, snapshot)
            self._stacks.setdefault(self._stack_key(), []).append(entry)
            return entry

    def _refresh(self, meta: MetaManifest, manifest: dict) -> None:
        """Update the snapshot of `meta` if we track it."""
        with self._lock:
            if self._find(meta) is not None:
                self._track(meta, manifest)

    def push_to_stack(self, manifest: dict) -> LifecycleEntry:
        """Track a resource that was created without the manager."""
        return self._track(k8s.make_meta(manifest), manifest)

    def push_action(self, action: Callable[[], None],
                    manifest: dict | None = None) -> LifecycleEntry:
        """Run `action` during the next teardown sweep of the current scope."""
        meta = k8s.make_meta(manifest) if manifest is not None else None
        with self._lock:
            entry = LifecycleEntry(next(self._uids), meta, copy.deepcopy(manifest), action)
            self._stacks.setdefault(self._stack_key(), []).append(entry)
        return entry

    def tracked(self) -> List[LifecycleEntry]:
        """Return a copy of the stack of the active context and scope."""
        with self._lock:
            return list(self._stacks.get(self._stack_key(), []))

    def _describe(self, entry: LifecycleEntry) -> str:
        if entry.meta is None:
            return f"action {entry.uid}"
        meta = entry.meta
        ns = f"{meta.namespace}/" if meta.namespace else ""
        return f"{meta.kind} {ns}{meta.name}"

    def print_current_resources(self, level: int = logging.INFO) -> None:
        context, scope = self._stack_key()
        logit.log(level, f"Resources of {scope} in context {context}:")
        for entry in self.tracked():
            logit.log(level, f"  {entry.uid}: {self._describe(entry)}")

    def print_all_resources(self, level: int = logging.INFO) -> None:
        with self._lock:
            stacks = {k: list(v) for k, v in self._stacks.items()}

        for (context, scope), stack in sorted(stacks.items()):
            logit.log(level, f"Resources of {scope} in context {context}:")
            for entry in stack:
                logit.log(level, f"  {entry.uid}: {self._describe(entry)}")

    def store_yaml(self, meta: MetaManifest, manifest: dict) -> Path | None:
        """Write `manifest` to `store_yaml_path` if that option is set."""
        if self.config.store_yaml_path is None:
            return None

        context, scope = self._stack_key()
        scope = re.sub(r"[^A-Za-z0-9_.-]+", "_", scope)
        fname = f"{meta.kind}-{meta.namespace or 'cluster'}-{meta.name}.yaml"
        path = self.config.store_yaml_path / context / "test-files" / scope / fname
        yaml_io.write(path, manifest)
        return path

    @staticmethod
    def read_resources_from_file(path: Path) -> List[dict]:
        """Return all manifests in the (multi document) YAML file `path`."""
        return yaml_io.load_all(Path(path).read_text())

    # -------------------------------------------------------------------------
    #                              Convergence Waits
    # -------------------------------------------------------------------------
    def _readiness(self, handler: ResourceType, meta: MetaManifest,
                   poll_interval: float | None,
                   timeout: float | None) -> Tuple[str, float, float, Callable[[], bool]]:
        """Return the arguments for `wait.until` to wait for `meta` to be ready."""
        if timeout is None:
            timeout = handler.readiness_timeout or self.config.timeout_readiness
        poll = poll_interval or self.config.poll_interval
        desc = f"readiness of {format_resource('', meta).strip()}"

        def ready() -> bool:
            return handler.is_ready(handler.fetch(meta.name, meta.namespace))
        return desc, poll, timeout, ready

    def _deletion(self, handler: ResourceType,
                  meta: MetaManifest) -> Tuple[str, float, float, Callable[[], bool]]:
        desc = f"deletion of {format_resource('', meta).strip()}"

        def deleted() -> bool:
            return handler.is_deleted(handler.fetch(meta.name, meta.namespace))
        return desc, self.config.poll_interval_delete, self.config.timeout_deletion, deleted

    def _log_state(self, handler: ResourceType, meta: MetaManifest) -> None:
        """Log the current manifest of `meta` (for timeouts)."""
        try:
            obj = handler.fetch(meta.name, meta.namespace)
        except ClusterError as err:
            obj = f"<unavailable: {err}>"
        logit.error(f"Last known state of {meta.kind} {meta.name}: {obj}")

    def _wait_ready(self, handler: ResourceType, meta: MetaManifest,
                    poll_interval: float | None = None,
                    timeout: float | None = None) -> None:
        desc, poll, timeout, ready = self._readiness(handler, meta, poll_interval, timeout)
        wait.until(
            desc, poll, timeout, ready,
            on_timeout=lambda: self._log_state(handler, meta),
        )

    def wait_resource_condition(self, manifest: dict, condition: ResourceCondition,
                                timeout: float | None = None,
                                poll_interval: float | None = None) -> None:
        """Block until `condition` holds for the resource in `manifest`."""
        handler = self.registry().resolve(manifest)
        meta = k8s.make_meta(manifest)
        desc = f"{condition.name} of {format_resource('', meta).strip()}"

        def check() -> bool:
            return condition.predicate(handler.fetch(meta.name, meta.namespace))

        wait.until(
            desc,
            poll_interval or self.config.poll_interval,
            timeout if timeout is not None else self.config.timeout_readiness,
            check,
        )

    # -------------------------------------------------------------------------
    #                                  Creation
    # -------------------------------------------------------------------------
    def _create(self, manifest: dict,
                update: bool) -> Tuple[ResourceType, MetaManifest]:
        """Create `manifest` and track it.

        Update the existing resource instead if `update` is set and the
        resource exists already.

        """
        ctx = self._context()
        handler = ctx.registry.resolve(manifest)
        meta = k8s.make_meta(manifest)

        log_resource("Creating", meta, ctx.name)
        try:
            handler.create(manifest)
        except AlreadyExists:
            if not update:
                raise
            log_resource("Updating", meta, ctx.name)
            handler.replace(meta.name, meta.namespace, overlay_editor(manifest))

        self._track(meta, manifest)
        self.store_yaml(meta, manifest)
        for fun in self._create_callbacks:
            fun(meta)
        return handler, meta

    def create_resource_without_wait(self, *manifests: dict) -> None:
        for manifest in manifests:
            self._create(manifest, update=False)

    def create_resource_with_wait(self, *manifests: dict,
                                  poll_interval: float | None = None,
                                  timeout: float | None = None) -> None:
        """Create the resources one by one and wait until each one is ready.

        The resources created before an error remain tracked and the next
        sweep will delete them.

        """
        for manifest in manifests:
            handler, meta = self._create(manifest, update=False)
            self._wait_ready(handler, meta, poll_interval, timeout)

    def create_resource_async_wait(self, *manifests: dict,
                                   poll_interval: float | None = None,
                                   timeout: float | None = None) -> None:
        """Create all resources first and then wait until all are ready."""
        created = [self._create(_, update=False) for _ in manifests]
        futures = [
            wait.until_async(*self._readiness(handler, meta, poll_interval, timeout))
            for handler, meta in created
        ]
        join(futures)

    def create_or_update_resource_without_wait(self, *manifests: dict) -> None:
        for manifest in manifests:
            self._create(manifest, update=True)

    def create_or_update_resource_with_wait(self, *manifests: dict,
                                            poll_interval: float | None = None,
                                            timeout: float | None = None) -> None:
        """Like `create_resource_with_wait` but update resources that exist.

        Calling this twice with the same manifest leaves one resource in the
        cluster and one entry on the stack.

        """
        for manifest in manifests:
            handler, meta = self._create(manifest, update=True)
            self._wait_ready(handler, meta, poll_interval, timeout)

    def create_or_update_resource_async_wait(self, *manifests: dict,
                                             poll_interval: float | None = None,
                                             timeout: float | None = None) -> None:
        created = [self._create(_, update=True) for _ in manifests]
        futures = [
            wait.until_async(*self._readiness(handler, meta, poll_interval, timeout))
            for handler, meta in created
        ]
        join(futures)

    # -------------------------------------------------------------------------
    #                              Update & Replace
    # -------------------------------------------------------------------------
    def update_resource(self, *manifests: dict) -> None:
        """Overwrite the resources with `manifests`."""
        ctx = self._context()
        for manifest in manifests:
            handler = ctx.registry.resolve(manifest)
            meta = k8s.make_meta(manifest)
            log_resource("Updating", meta, ctx.name)
            handler.update(manifest)
            self._refresh(meta, manifest)

    def replace_resource(self, manifest: dict, editor: Editor,
                         poll_interval: float | None = None,
                         timeout: float | None = None) -> dict:
        """Apply `editor` to the live resource and wait until it is ready again.

        Raise `Conflict` if someone else modified the resource concurrently.

        """
        ctx = self._context()
        handler = ctx.registry.resolve(manifest)
        meta = k8s.make_meta(manifest)

        log_resource("Replacing", meta, ctx.name)
        obj = handler.replace(meta.name, meta.namespace, editor)
        self._refresh(meta, obj)
        self._wait_ready(handler, meta, poll_interval, timeout)
        return obj

    def replace_resource_with_retries(self, manifest: dict, editor: Editor,
                                      retries: int = 3) -> dict:
        """Like `replace_resource` but try up to `retries` times on `Conflict`."""
        def _on_conflict(retry_state: tc.RetryCallState):
            logit.warning(
                f"Conflict {retry_state.attempt_number}/{retries} while replacing "
                f"{manifest['kind']} {manifest['metadata']['name']}"
            )

        retryer = tc.Retrying(
            stop=tc.stop_after_attempt(max(retries, 1)),
            wait=tc.wait_random(0, 1),
            retry=tc.retry_if_exception_type(Conflict),
            before_sleep=_on_conflict,
            reraise=True,
            sleep=lambda delay: wait._mysleep(delay),
        )
        return retryer(self.replace_resource, manifest, editor)

    # -------------------------------------------------------------------------
    #                                  Deletion
    # -------------------------------------------------------------------------
    def _delete(self, ctx: ClusterContext, handler: ResourceType,
                meta: MetaManifest) -> None:
        log_resource("Deleting", meta, ctx.name)
        handler.delete(meta.name, meta.namespace)
        for fun in self._delete_callbacks:
            fun(meta)

    def decide_delete_wait_async(self, waiters: List[concurrent.futures.Future],
                                 async_wait: bool, meta: MetaManifest,
                                 handler: ResourceType) -> None:
        """Wait for the deletion of `meta` now or append the future to `waiters`."""
        args = self._deletion(handler, meta)
        if async_wait:
            waiters.append(wait.until_async(*args))
        else:
            wait.until(*args)

    def delete_resource_without_wait(self, *manifests: dict) -> None:
        ctx = self._context()
        for manifest in manifests:
            self._delete(ctx, ctx.registry.resolve(manifest), k8s.make_meta(manifest))

    def delete_resource_with_wait(self, *manifests: dict) -> None:
        """Delete the resources one by one and wait until each one is gone."""
        self.delete_resource(*manifests, async_wait=False)

    def delete_resource_with_async_wait(
            self, *manifests: dict) -> List[concurrent.futures.Future]:
        """Delete the resources and return the futures of their deletion waits."""
        ctx = self._context()
        waiters: List[concurrent.futures.Future] = []
        for manifest in manifests:
            handler, meta = ctx.registry.resolve(manifest), k8s.make_meta(manifest)
            self._delete(ctx, handler, meta)
            self.decide_delete_wait_async(waiters, True, meta, handler)
        return waiters

    def delete_resource(self, *manifests: dict, async_wait: bool = True) -> None:
        """Delete the resources and return once all of them are gone."""
        ctx = self._context()
        waiters: List[concurrent.futures.Future] = []
        for manifest in manifests:
            handler, meta = ctx.registry.resolve(manifest), k8s.make_meta(manifest)
            self._delete(ctx, handler, meta)
            self.decide_delete_wait_async(waiters, async_wait, meta, handler)
        join(waiters)

    def delete_resources(self, async_wait: bool | None = None) -> None:
        """Tear down everything tracked in the active context and test scope.

        Delete the resources in reverse order of creation and wait until all
        of them are gone. Resources that no longer exist count as deleted.
        Errors do not stop the sweep. Instead, they are collected and raised
        as a single `TeardownAggregateFailure` once the sweep is complete.

        """
        async_wait = self.config.async_delete if async_wait is None else async_wait

        key = self._stack_key()
        with self._lock:
            stack = self._stacks.pop(key, [])
        if not stack:
            logit.debug(f"Nothing to delete for {key[1]} in context {key[0]}")
            return

        log_separator()
        logit.info(f"Deleting {len(stack)} resources of {key[1]} in context {key[0]}")

        ctx: ClusterContext | None = None
        connect_err: Exception | None = None
        failures: List[Tuple[str, BaseException]] = []
        waiters: List[Tuple[str, concurrent.futures.Future]] = []
        for entry in reversed(stack):
            desc = self._describe(entry)

            # Only resource entries need the cluster. Connect at most once.
            if entry.action is None and ctx is None:
                if connect_err is None:
                    try:
                        ctx = self._context(key[0])
                    except Exception as err:
                        logit.error(f"Cannot connect to context {key[0]}: {err}")
                        connect_err = err
                if connect_err is not None:
                    failures.append((desc, connect_err))
                    continue

            try:
                if entry.action is not None:
                    entry.action()
                    continue

                assert ctx is not None and entry.meta is not None
                handler = ctx.registry.resolve(entry.meta)
                try:
                    self._delete(ctx, handler, entry.meta)
                except NotFound:
                    logit.debug(f"{desc} is already gone")
                    continue

                futures: List[concurrent.futures.Future] = []
                self.decide_delete_wait_async(futures, async_wait, entry.meta, handler)
                waiters.extend((desc, _) for _ in futures)
            except Exception as err:
                logit.error(f"Could not delete {desc}: {err}")
                failures.append((desc, err))

        # Wait for all deletions before we report any errors.
        concurrent.futures.wait([fut for _, fut in waiters])
        for desc, fut in waiters:
            err = fut.exception()
            if err is not None:
                logit.error(f"Could not delete {desc}: {err}")
                failures.append((desc, err))

        if failures:
            raise TeardownAggregateFailure(failures)
        log_separator()
