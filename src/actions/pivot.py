"""Pivot: move the Cluster API object graph from one API server to another.

There is no transaction spanning two API servers, so the move is an explicit
protocol whose phase is persisted on the WorkflowRun:

    none → paused → dual-existence → source-cleared

paused          source reconciliation stopped (spec.paused + annotation)
dual-existence  copies exist on dest; source still authoritative
source-cleared  dest controllers confirmed, source objects deleted

The source is only cleared after the destination controllers report the same
observable status the source did, so at least one copy of every object exists
at all times. Any failure before clearing re-pauses the destination copies,
unpauses the source and can be retried. A failure while clearing is an
InconsistencyError.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from common import ActionResult, CancelToken, wait_until
from config import ClusterConfig
from errors import GokpError, InconsistencyError, InfrastructureError
from kube import ClusterEndpoint, KubeClient, object_key, resource_ref, strip_server_fields
from run_state import PIVOT_CLEARED, PIVOT_DUAL, PIVOT_NONE, PIVOT_PAUSED, WorkflowRun

logger = logging.getLogger(__name__)

PAUSED_ANNOTATION = 'cluster.x-k8s.io/paused'
CLUSTER_NAME_LABEL = 'cluster.x-k8s.io/cluster-name'
CLUSTER_RESOURCE = 'cluster.cluster.x-k8s.io'

# Namespaced types scanned for the graph, roughly owners first. Only these
# kinds are moved: MachinePool, AWSMachinePool and ClusterResourceSetBinding
# objects are not discovered and stay on the source. Extend via
# PivotRequest.resources when the cluster uses them.
PIVOT_RESOURCES = (
    'cluster.cluster.x-k8s.io',
    'awscluster.infrastructure.cluster.x-k8s.io',
    'kubeadmcontrolplane.controlplane.cluster.x-k8s.io',
    'awsmachinetemplate.infrastructure.cluster.x-k8s.io',
    'kubeadmconfigtemplate.bootstrap.cluster.x-k8s.io',
    'machinedeployment.cluster.x-k8s.io',
    'machineset.cluster.x-k8s.io',
    'machine.cluster.x-k8s.io',
    'awsmachine.infrastructure.cluster.x-k8s.io',
    'kubeadmconfig.bootstrap.cluster.x-k8s.io',
    'machinehealthcheck.cluster.x-k8s.io',
    'secret',
)

# Status fields compared between source and destination
STATUS_FIELDS = ('phase', 'ready', 'controlPlaneReady', 'infrastructureReady')


@dataclass
class PivotRequest:
    """Scope of a pivot: one cluster's objects in one namespace."""
    cluster_name: str
    namespace: str = 'default'
    resources: tuple = PIVOT_RESOURCES

    @property
    def selector(self) -> str:
        return f'{CLUSTER_NAME_LABEL}={self.cluster_name}'


@dataclass
class PivotGraph:
    """Objects to move in topological order (owners before dependents)."""
    objects: list[dict] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.objects)

    def keys(self) -> list[str]:
        return [object_key(o) for o in self.objects]


def _uid(obj: dict) -> str:
    return obj.get('metadata', {}).get('uid', '')


def _owner_uids(obj: dict) -> list[str]:
    return [ref.get('uid', '') for ref in obj.get('metadata', {}).get('ownerReferences') or []]


def observed_status(obj: Optional[dict]) -> dict:
    """Subset of status used to decide that a controller has caught up."""
    status = (obj or {}).get('status') or {}
    return {k: status[k] for k in STATUS_FIELDS if k in status}


def topological_order(objects: list[dict]) -> list[dict]:
    """Order objects so every owner precedes its dependents.

    Ties keep discovery order, so the result is deterministic.
    """
    by_uid = {_uid(o): o for o in objects}
    remaining = list(objects)
    ordered: list[dict] = []
    placed: set[str] = set()
    while remaining:
        progress = False
        for obj in list(remaining):
            pending_owners = [u for u in _owner_uids(obj) if u in by_uid and u not in placed]
            if not pending_owners:
                ordered.append(obj)
                placed.add(_uid(obj))
                remaining.remove(obj)
                progress = True
        if not progress:
            # Ownership cycle; keep discovery order for what is left
            logger.warning(f"Ownership cycle among {[object_key(o) for o in remaining]}")
            ordered.extend(remaining)
            break
    return ordered


class PivotController:
    """Transfers a PivotRequest's object graph from source to dest."""

    def __init__(
        self,
        run: WorkflowRun,
        request: PivotRequest,
        client_factory=None,
        confirm_timeout: int = 900,
        poll_interval: int = 15,
        cancel: Optional[CancelToken] = None,
    ):
        self.run = run
        self.request = request
        self.client_factory = client_factory or KubeClient
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.cancel = cancel

    # -- discovery -----------------------------------------------------------

    def discover(self, client: KubeClient) -> PivotGraph:
        """Read the root Cluster plus everything it transitively owns.

        Objects carrying the cluster-name label are included as well, so
        unowned members of the cluster (e.g. templates) are not left behind.
        """
        ns = self.request.namespace
        root = client.get(CLUSTER_RESOURCE, self.request.cluster_name, ns)
        if root is None:
            return PivotGraph()

        candidates: list[dict] = []
        for resource in self.request.resources:
            candidates.extend(client.list(resource, namespace=ns))

        included = {_uid(root)}
        for obj in candidates:
            labels = obj.get('metadata', {}).get('labels') or {}
            if labels.get(CLUSTER_NAME_LABEL) == self.request.cluster_name:
                included.add(_uid(obj))

        changed = True
        while changed:
            changed = False
            for obj in candidates:
                uid = _uid(obj)
                if uid not in included and any(u in included for u in _owner_uids(obj)):
                    included.add(uid)
                    changed = True

        members = []
        seen = set()
        for obj in candidates:
            uid = _uid(obj)
            if uid in included and uid not in seen:
                members.append(obj)
                seen.add(uid)
        return PivotGraph(objects=topological_order(members))

    # -- pause / resume ------------------------------------------------------

    def _set_paused(self, client: KubeClient, graph: PivotGraph, paused: bool) -> None:
        annotation = '' if paused else None
        for obj in graph.objects:
            meta = obj['metadata']
            ref = resource_ref(obj)
            if obj['kind'] == 'Cluster':
                client.patch(ref, meta['name'], meta.get('namespace'), {'spec': {'paused': paused}})
            client.patch(ref, meta['name'], meta.get('namespace'),
                         {'metadata': {'annotations': {PAUSED_ANNOTATION: annotation}}})

    def pause(self, client: KubeClient, graph: PivotGraph) -> None:
        logger.info(f"Pausing {len(graph)} objects on {client.endpoint.name}")
        self._set_paused(client, graph, True)

    def resume(self, client: KubeClient, graph: PivotGraph) -> None:
        logger.info(f"Resuming {len(graph)} objects on {client.endpoint.name}")
        self._set_paused(client, graph, False)

    # -- transfer ------------------------------------------------------------

    def recreate(self, dest: KubeClient, graph: PivotGraph) -> dict[str, str]:
        """Create every object on dest, owners first, re-linking owner UIDs.

        Objects that already exist on dest (a retried pivot) are reused.

        Returns:
            Mapping of source UID to destination UID
        """
        uid_map: dict[str, str] = {}
        for obj in graph.objects:
            meta = obj['metadata']
            ref = resource_ref(obj)
            existing = dest.get(ref, meta['name'], meta.get('namespace'))
            if existing is not None:
                logger.debug(f"{object_key(obj)} already on {dest.endpoint.name}")
                uid_map[_uid(obj)] = _uid(existing)
                continue

            clean = strip_server_fields(obj)
            owners = []
            for owner in meta.get('ownerReferences') or []:
                if owner.get('uid') in uid_map:
                    owners.append({**owner, 'uid': uid_map[owner['uid']]})
                else:
                    logger.warning(f"{object_key(obj)}: dropping owner {owner.get('kind')}/{owner.get('name')} "
                                   "outside the moved graph")
            if owners:
                clean['metadata']['ownerReferences'] = owners

            created = dest.create(clean)
            uid_map[_uid(obj)] = _uid(created)
        logger.info(f"Created {len(graph)} objects on {dest.endpoint.name}")
        return uid_map

    def confirm(self, dest: KubeClient, graph: PivotGraph, snapshot: dict[str, dict]) -> None:
        """Wait until dest controllers report the status seen on source.

        Raises:
            ReadinessTimeoutError: If they do not converge in time
        """
        def converged() -> bool:
            for obj in graph.objects:
                expected = snapshot.get(object_key(obj))
                if not expected:
                    continue
                meta = obj['metadata']
                actual = observed_status(dest.get(resource_ref(obj), meta['name'], meta.get('namespace')))
                if any(actual.get(k) != v for k, v in expected.items()):
                    logger.debug(f"{object_key(obj)} not converged: {actual} != {expected}")
                    return False
            return True

        logger.info(f"Waiting for controllers on {dest.endpoint.name} to adopt the cluster")
        wait_until(converged, timeout=self.confirm_timeout, interval=self.poll_interval,
                   description=f"pivoted objects to reconcile on {dest.endpoint.name}",
                   cancel=self.cancel)

    def clear_source(self, source: KubeClient, graph: PivotGraph) -> None:
        """Delete moved objects from source, dependents first.

        Finalizers are dropped first; the paused source controllers would
        otherwise never release them (and must not delete real infrastructure).
        """
        for obj in reversed(graph.objects):
            meta = obj['metadata']
            ref = resource_ref(obj)
            if meta.get('finalizers'):
                source.patch(ref, meta['name'], meta.get('namespace'), {'metadata': {'finalizers': None}})
            source.delete(ref, meta['name'], meta.get('namespace'))
        logger.info(f"Deleted {len(graph)} objects from {source.endpoint.name}")

    def _rollback(self, source: KubeClient, dest: KubeClient, graph: PivotGraph) -> None:
        """Leave source authoritative after a failed transfer."""
        present = []
        for obj in graph.objects:
            meta = obj['metadata']
            try:
                if dest.get(resource_ref(obj), meta['name'], meta.get('namespace')) is not None:
                    present.append(obj)
            except GokpError as e:
                logger.warning(f"Rollback: cannot read {object_key(obj)} on {dest.endpoint.name}: {e}")
        for client, sub, paused in ((dest, PivotGraph(present), True), (source, graph, False)):
            try:
                self._set_paused(client, sub, paused)
            except GokpError as e:
                logger.warning(f"Rollback: cannot {'pause' if paused else 'resume'} "
                               f"objects on {client.endpoint.name}: {e}")

    # -- protocol ------------------------------------------------------------

    def move_pivot_objects(self, source: ClusterEndpoint, dest: ClusterEndpoint) -> PivotGraph:
        """Run the full pivot protocol. Safe to call again after a failure.

        Raises:
            InconsistencyError: If clearing the source fails after dest confirmed
            GokpError: Any earlier failure; source stays authoritative
        """
        if self.run.pivot_phase == PIVOT_CLEARED:
            logger.info("Pivot already completed")
            return PivotGraph()

        src = self.client_factory(source)
        dst = self.client_factory(dest)

        graph = self.discover(src)
        if not graph:
            if self.run.pivot_phase == PIVOT_DUAL and dst.get(
                    CLUSTER_RESOURCE, self.request.cluster_name, self.request.namespace) is not None:
                # Interrupted after the source was cleared but before it was recorded
                logger.info("Source already cleared; recording pivot as complete")
                self.run.set_pivot_phase(PIVOT_CLEARED)
                return PivotGraph()
            raise InfrastructureError(
                f"Cluster '{self.request.cluster_name}' not found on {source.name} "
                f"in namespace '{self.request.namespace}'")

        logger.info(f"Moving {len(graph)} objects from {source.name} to {dest.name}")
        try:
            self.pause(src, graph)
            self.run.set_pivot_phase(PIVOT_PAUSED)

            graph = self.discover(src)
            snapshot = {object_key(o): observed_status(o) for o in graph.objects}

            self.recreate(dst, graph)
            self.run.set_pivot_phase(PIVOT_DUAL)

            self.resume(dst, graph)
            self.confirm(dst, graph, snapshot)
        except Exception:
            logger.error("Pivot failed before source cleanup; restoring source ownership")
            self._rollback(src, dst, graph)
            self.run.set_pivot_phase(PIVOT_NONE)
            raise

        try:
            self.clear_source(src, graph)
        except Exception as e:
            remaining = []
            for obj in graph.objects:
                meta = obj['metadata']
                try:
                    if src.get(resource_ref(obj), meta['name'], meta.get('namespace')) is not None:
                        remaining.append(object_key(obj))
                except GokpError:
                    remaining.append(object_key(obj))
            raise InconsistencyError(
                f"Pivot confirmed on {dest.name} but clearing {source.name} failed: {e}. "
                f"Objects still on {source.name}: {', '.join(remaining) or 'unknown'}",
                remaining=remaining,
            ) from e

        self.run.set_pivot_phase(PIVOT_CLEARED)
        logger.info(f"Pivot complete: {dest.name} now owns cluster '{self.request.cluster_name}'")
        return graph


@dataclass
class PivotAction:
    """Move the cluster's management objects from bootstrap to target."""
    name: str
    namespace: str = 'default'
    confirm_timeout: int = 900
    poll_interval: int = 15

    def run(self, config: ClusterConfig, run: WorkflowRun) -> ActionResult:
        start = time.time()
        controller = PivotController(
            run,
            PivotRequest(config.cluster_name, namespace=self.namespace),
            confirm_timeout=self.confirm_timeout,
            poll_interval=self.poll_interval,
            cancel=run.cancel,
        )
        graph = controller.move_pivot_objects(run.require('bootstrap'), run.require('target'))
        logger.info(f"[{self.name}] {len(graph)} objects now managed by the target")
        return ActionResult(success=True, message=f"Moved {len(graph)} objects",
                            duration=time.time() - start)
