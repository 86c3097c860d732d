"""
Fault Injection Module

Stops one replica node of the store cluster so transfers can be exercised
against a degraded cluster. The node-stop action goes through a NodeController:
the Docker CLI, the Docker Engine REST API, or an in-process fake for tests.
Nothing here touches ledger data.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set
import subprocess
import threading

import httpx

from .errors import FaultInjectionFailure
from .logging_config import get_logger, log_action


logger = get_logger("atomic_ledger.chaos")


class NodeStopOutcome(Enum):
    """Result of asking a controller to stop a node"""
    STOPPED = "stopped"                  # Node was running and is now stopped
    ALREADY_STOPPED = "already_stopped"  # Node was not running


@dataclass
class StopNodeResult:
    node_id: str
    outcome: NodeStopOutcome
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "node_id": self.node_id,
            "outcome": self.outcome.value,
            "message": self.message,
        }


class NodeController(ABC):
    """Capability to take a replica node out of service"""

    @abstractmethod
    def stop(self, node_id: str) -> NodeStopOutcome:
        """
        Stop a node.

        Must return ALREADY_STOPPED, not raise, when the node is not running.
        Raises FaultInjectionFailure when the action cannot be carried out.
        """
        pass

    def close(self) -> None:
        pass


class DockerCliNodeController(NodeController):
    """Stops containers through the docker command line client"""

    def __init__(self, docker_binary: str = "docker", timeout: float = 15.0,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.docker_binary = docker_binary
        self.timeout = timeout
        self._runner = runner

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        command = [self.docker_binary, *args]
        try:
            return self._runner(
                command, capture_output=True, text=True, timeout=self.timeout, check=False
            )
        except subprocess.TimeoutExpired as exc:
            raise FaultInjectionFailure(
                f"'{' '.join(command)}' timed out after {self.timeout}s"
            ) from exc
        except OSError as exc:
            raise FaultInjectionFailure(f"Could not run {self.docker_binary}: {exc}") from exc

    def is_running(self, node_id: str) -> bool:
        result = self._run("inspect", "--format", "{{.State.Running}}", node_id)
        if result.returncode != 0:
            raise FaultInjectionFailure(
                f"Could not inspect container {node_id}: {result.stderr.strip()}",
                {"node_id": node_id},
            )
        return result.stdout.strip().lower() == "true"

    def stop(self, node_id: str) -> NodeStopOutcome:
        if not self.is_running(node_id):
            return NodeStopOutcome.ALREADY_STOPPED

        result = self._run("stop", node_id)
        if result.returncode != 0:
            raise FaultInjectionFailure(
                f"docker stop {node_id} failed: {result.stderr.strip()}",
                {"node_id": node_id, "returncode": result.returncode},
            )
        return NodeStopOutcome.STOPPED


class DockerEngineNodeController(NodeController):
    """Stops containers through the Docker Engine REST API"""

    def __init__(self, base_url: str = "http://localhost:2375", timeout: float = 15.0,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def stop(self, node_id: str) -> NodeStopOutcome:
        try:
            response = self._client.post(f"{self.base_url}/containers/{node_id}/stop")
        except httpx.HTTPError as exc:
            raise FaultInjectionFailure(f"Docker engine request failed: {exc}") from exc

        if response.status_code == 204:
            return NodeStopOutcome.STOPPED
        if response.status_code == 304:
            return NodeStopOutcome.ALREADY_STOPPED
        if response.status_code == 404:
            raise FaultInjectionFailure(f"No such container: {node_id}", {"node_id": node_id})
        raise FaultInjectionFailure(
            f"Docker engine returned {response.status_code}: {response.text}",
            {"node_id": node_id, "status_code": response.status_code},
        )

    def close(self) -> None:
        self._client.close()


class SimulatedCluster:
    """
    Replica set stand-in for tests. A majority of nodes must be running for
    the cluster to accept commits.
    """

    def __init__(self, nodes: Iterable[str]):
        self.nodes: List[str] = list(nodes)
        if not self.nodes:
            raise ValueError("A cluster needs at least one node")
        self._stopped: Set[str] = set()
        self._lock = threading.Lock()

    def stop(self, node_id: str) -> bool:
        """Stop a node; returns False if it was already stopped"""
        if node_id not in self.nodes:
            raise KeyError(node_id)
        with self._lock:
            if node_id in self._stopped:
                return False
            self._stopped.add(node_id)
            return True

    def start(self, node_id: str) -> None:
        with self._lock:
            self._stopped.discard(node_id)

    def is_running(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self.nodes and node_id not in self._stopped

    def running_nodes(self) -> List[str]:
        with self._lock:
            return [n for n in self.nodes if n not in self._stopped]

    def has_quorum(self) -> bool:
        return len(self.running_nodes()) > len(self.nodes) // 2


class FakeNodeController(NodeController):
    """In-process controller for tests; optionally drives a SimulatedCluster"""

    def __init__(self, cluster: Optional[SimulatedCluster] = None,
                 fail_with: Optional[str] = None):
        self.cluster = cluster
        self.fail_with = fail_with
        self.calls: List[str] = []
        self._stopped: Set[str] = set()

    def stop(self, node_id: str) -> NodeStopOutcome:
        self.calls.append(node_id)
        if self.fail_with:
            raise FaultInjectionFailure(self.fail_with, {"node_id": node_id})

        if self.cluster is not None:
            try:
                stopped = self.cluster.stop(node_id)
            except KeyError:
                raise FaultInjectionFailure(f"No such node: {node_id}", {"node_id": node_id})
        else:
            stopped = node_id not in self._stopped
            self._stopped.add(node_id)

        return NodeStopOutcome.STOPPED if stopped else NodeStopOutcome.ALREADY_STOPPED


class FaultInjector:
    """Stops a designated replica node on request"""

    def __init__(self, controller: NodeController, default_node: str):
        self.controller = controller
        self.default_node = default_node

    @classmethod
    def from_config(cls, config) -> 'FaultInjector':
        """Build an injector with the controller selected by chaos_backend"""
        if config.chaos_backend == "engine":
            controller = DockerEngineNodeController(config.docker_engine_url, config.chaos_timeout)
        elif config.chaos_backend == "cli":
            controller = DockerCliNodeController(config.chaos_docker_binary, config.chaos_timeout)
        else:
            raise ValueError(f"Unknown chaos backend: {config.chaos_backend!r}")
        return cls(controller, config.chaos_node)

    def stop_node(self, node_id: Optional[str] = None) -> StopNodeResult:
        """
        Stop one replica node; the configured default node when none is given.

        Raises:
            FaultInjectionFailure: the controller could not stop the node
        """
        node_id = node_id or self.default_node
        log_action(logger, "info", f"Executing chaos: stopping node {node_id}",
                   action="stop_node", resource=node_id)

        try:
            outcome = self.controller.stop(node_id)
        except FaultInjectionFailure as exc:
            logger.error(f"Failed to stop node {node_id}: {exc.message}")
            raise
        except Exception as exc:
            logger.error(f"Failed to stop node {node_id}: {exc}", exc_info=True)
            raise FaultInjectionFailure(f"Failed to stop node {node_id}: {exc}") from exc

        if outcome is NodeStopOutcome.ALREADY_STOPPED:
            message = f"Node {node_id} was already stopped."
        else:
            message = f"Successfully stopped node {node_id}. The cluster should remain available."

        log_action(logger, "info", message, action="stop_node", resource=node_id,
                   extra={"outcome": outcome.value})
        return StopNodeResult(node_id=node_id, outcome=outcome, message=message)

    def close(self) -> None:
        self.controller.close()
