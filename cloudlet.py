# cloudlet.py
import weakref
from enum import Enum

import networkx as nx

from exceptions import StageMismatch


class UtilizationModelFull:
    """The cloudlet always uses all of the resource it was given."""
    def get_utilization(self, time):
        return 1.0


class UtilizationModelConstant:
    def __init__(self, ratio):
        """
        :param ratio: Fraction of the resource requested (0 to 1)
        """
        if not 0.0 <= ratio <= 1.0:
            raise ValueError(f"Utilization ratio must be within [0, 1], got {ratio}")
        self.ratio = ratio

    def get_utilization(self, time):
        return self.ratio


class CloudletStatus(Enum):
    CREATED = 0
    READY = 1
    QUEUED = 2
    INEXEC = 3
    SUCCESS = 4
    FAILED = 5
    CANCELED = 6


class Cloudlet:
    def __init__(self, cloudlet_id, length, num_pes=1, file_size=0, output_size=0,
                 utilization_model_cpu=None, utilization_model_ram=None, utilization_model_bw=None):
        """
        :param cloudlet_id: Unique identifier
        :param length: Total workload in MI (Million Instructions)
        :param num_pes: Number of PEs the cloudlet runs on
        :param file_size: Input file size
        :param output_size: Output file size
        """
        if length < 0:
            raise ValueError(f"Cloudlet length must be non-negative, got {length}")
        self.cloudlet_id = cloudlet_id
        self.length = length
        self.num_pes = num_pes
        self.file_size = file_size
        self.output_size = output_size
        self.utilization_model_cpu = utilization_model_cpu or UtilizationModelFull()
        self.utilization_model_ram = utilization_model_ram or UtilizationModelFull()
        self.utilization_model_bw = utilization_model_bw or UtilizationModelFull()

        self.user_id = None
        self.guest_id = None
        self.resource_id = None
        self.status = CloudletStatus.CREATED
        self.remaining = length
        self.submission_time = None
        self.exec_start_time = None
        self.finish_time = None

    @property
    def finished(self):
        return self.status in (CloudletStatus.SUCCESS, CloudletStatus.FAILED, CloudletStatus.CANCELED)

    @property
    def finished_so_far(self):
        return self.length - self.remaining

    @property
    def actual_cpu_time(self):
        if self.exec_start_time is None or self.finish_time is None:
            return 0.0
        return self.finish_time - self.exec_start_time

    def utilization_of_cpu(self, time):
        return self.utilization_model_cpu.get_utilization(time)

    def utilization_of_ram(self, time):
        return self.utilization_model_ram.get_utilization(time)

    def utilization_of_bw(self, time):
        return self.utilization_model_bw.get_utilization(time)

    def start(self, current_time):
        self.status = CloudletStatus.INEXEC
        if self.exec_start_time is None:
            self.exec_start_time = current_time

    def finish(self, current_time, status=CloudletStatus.SUCCESS):
        self.status = status
        self.finish_time = current_time
        if status == CloudletStatus.SUCCESS:
            self.remaining = 0

    def consumes_cpu(self):
        return True

    def __str__(self):
        status = self.status.name if self.finished else f"{self.remaining:.2f} MI remaining"
        return f"Cloudlet {self.cloudlet_id} | {status}"


class StageKind(Enum):
    EXECUTION = "execution"
    SEND = "send"
    RECV = "recv"


class TaskStage:
    def __init__(self, kind, amount, stage_id, peer=None, ordinal=0):
        """
        One phase of a NetworkCloudlet.

        :param kind: StageKind
        :param amount: MI for EXECUTION, data size for SEND/RECV
        :param stage_id: Position of the stage in its cloudlet
        :param peer: Cloudlet on the other side of a SEND/RECV
        :param ordinal: How many earlier stages of the same kind share this peer
        """
        self.kind = kind
        self.amount = amount
        self.stage_id = stage_id
        self.peer = peer
        self.ordinal = ordinal
        self.remaining = amount
        self.start_time = None
        self.finish_time = None

    @property
    def peer_id(self):
        return self.peer.cloudlet_id if self.peer is not None else None

    def __repr__(self):
        if self.kind == StageKind.EXECUTION:
            return f"EXEC({self.amount})"
        arrow = "->" if self.kind == StageKind.SEND else "<-"
        return f"{self.kind.name}({self.amount}{arrow}{self.peer_id})"


class NetworkCloudlet(Cloudlet):
    """A cloudlet that runs an ordered list of compute/send/receive stages."""

    def __init__(self, cloudlet_id, length=0, num_pes=1, file_size=0, output_size=0,
                 utilization_model_cpu=None, utilization_model_ram=None, utilization_model_bw=None):
        super().__init__(cloudlet_id, length, num_pes, file_size, output_size,
                         utilization_model_cpu, utilization_model_ram, utilization_model_bw)
        self.stages = []
        self.current_stage_index = -1
        self._app = None

    @property
    def app(self):
        return self._app() if self._app is not None else None

    @app.setter
    def app(self, app):
        self._app = weakref.ref(app) if app is not None else None

    @property
    def current_stage(self):
        if 0 <= self.current_stage_index < len(self.stages):
            return self.stages[self.current_stage_index]
        return None

    def _ordinal(self, kind, peer):
        return sum(1 for s in self.stages if s.kind == kind and s.peer is peer)

    def add_execution_stage(self, length):
        if length <= 0:
            raise ValueError(f"Execution stage length must be positive, got {length}")
        self.stages.append(TaskStage(StageKind.EXECUTION, length, len(self.stages)))
        self.length = sum(s.amount for s in self.stages if s.kind == StageKind.EXECUTION)
        self.remaining = self.length

    def add_send_stage(self, data, peer):
        if data <= 0:
            raise ValueError(f"Send stage size must be positive, got {data}")
        ordinal = self._ordinal(StageKind.SEND, peer)
        self.stages.append(TaskStage(StageKind.SEND, data, len(self.stages), peer, ordinal))

    def add_recv_stage(self, peer, data=0):
        """The size may be left at 0; it is taken from the matching send on validation."""
        if data < 0:
            raise ValueError(f"Receive stage size must not be negative, got {data}")
        ordinal = self._ordinal(StageKind.RECV, peer)
        self.stages.append(TaskStage(StageKind.RECV, data, len(self.stages), peer, ordinal))

    def prepare(self):
        """A network cloudlet submitted without stages runs its length as one execution stage."""
        if not self.stages and self.length > 0:
            self.add_execution_stage(self.length)
        self.current_stage_index = -1

    def consumes_cpu(self):
        stage = self.current_stage
        return stage is not None and stage.kind == StageKind.EXECUTION

    def advance_stage(self, current_time):
        """
        Close the current stage and open the next one.
        Returns the new current stage, or None when all stages are done.
        """
        stage = self.current_stage
        if stage is not None:
            stage.finish_time = current_time
            stage.remaining = 0
        self.current_stage_index += 1
        stage = self.current_stage
        if stage is not None:
            stage.start_time = current_time
            stage.remaining = stage.amount
        return stage

    def __str__(self):
        return f"NetworkCloudlet {self.cloudlet_id} | stages: {self.stages}"


class AppCloudlet:
    APP_MC = 1
    APP_WORKFLOW = 3

    def __init__(self, app_type, app_id, deadline, user_id):
        self.app_type = app_type
        self.app_id = app_id
        self.deadline = deadline
        self.user_id = user_id
        self.cloudlets = []

    def add_cloudlet(self, cloudlet):
        cloudlet.user_id = self.user_id
        cloudlet.app = self
        self.cloudlets.append(cloudlet)
        return cloudlet

    def sends_to(self):
        """Edge list of (sender id, receiver id)."""
        return [(cl.cloudlet_id, s.peer_id) for cl in self.cloudlets
                for s in cl.stages if s.kind == StageKind.SEND]

    def receives_from(self):
        """Edge list of (receiver id, sender id)."""
        return [(cl.cloudlet_id, s.peer_id) for cl in self.cloudlets
                for s in cl.stages if s.kind == StageKind.RECV]

    def _pair_stages(self):
        members = {cl.cloudlet_id: cl for cl in self.cloudlets}
        recv_index = {}
        for cl in self.cloudlets:
            for stage in cl.stages:
                if stage.kind == StageKind.RECV:
                    recv_index[(stage.peer_id, cl.cloudlet_id, stage.ordinal)] = (cl, stage)

        pairs = {}
        for cl in self.cloudlets:
            for stage in cl.stages:
                if stage.kind != StageKind.SEND:
                    continue
                if stage.peer_id not in members:
                    raise StageMismatch(
                        f"Cloudlet {cl.cloudlet_id} sends to {stage.peer_id}, which is not part of app {self.app_id}")
                key = (cl.cloudlet_id, stage.peer_id, stage.ordinal)
                if key not in recv_index:
                    raise StageMismatch(
                        f"Send #{stage.ordinal} from cloudlet {cl.cloudlet_id} to {stage.peer_id} "
                        f"has no matching receive stage")
                pairs[key] = ((cl, stage), recv_index.pop(key))

        if recv_index:
            (src, dst, ordinal), _ = next(iter(recv_index.items()))
            raise StageMismatch(f"Receive #{ordinal} in cloudlet {dst} from {src} has no matching send stage")
        return pairs

    def stage_graph(self):
        """
        Directed graph over stage completions.

        A matched SEND/RECV pair completes as a single transfer, so both stages
        map onto one node. A cycle in this graph means the stages wait on each
        other forever.
        """
        node_of = {}
        for (src, dst, ordinal), ((_, send), (_, recv)) in self._pair_stages().items():
            node = ("transfer", src, dst, ordinal)
            node_of[(src, send.stage_id)] = node
            node_of[(dst, recv.stage_id)] = node

        graph = nx.DiGraph()
        for cl in self.cloudlets:
            previous = None
            for stage in cl.stages:
                node = node_of.get((cl.cloudlet_id, stage.stage_id), ("stage", cl.cloudlet_id, stage.stage_id))
                graph.add_node(node)
                if previous is not None:
                    graph.add_edge(previous, node)
                previous = node
        return graph

    def validate(self):
        """Check stage pairing and the absence of circular waits; fill in receive sizes."""
        pairs = self._pair_stages()
        for ((_, send), (receiver, recv)) in pairs.values():
            if recv.amount and recv.amount != send.amount:
                raise StageMismatch(
                    f"Cloudlet {receiver.cloudlet_id} expects {recv.amount} from {recv.peer_id} "
                    f"but {send.amount} is sent")
            recv.amount = send.amount
            recv.remaining = send.amount

        graph = self.stage_graph()
        if not nx.is_directed_acyclic_graph(graph):
            cycle = nx.find_cycle(graph)
            raise StageMismatch(f"Stages of app {self.app_id} wait on each other: {cycle}")
        return True

    def __str__(self):
        return f"AppCloudlet {self.app_id} | type {self.app_type} | {len(self.cloudlets)} cloudlets"
