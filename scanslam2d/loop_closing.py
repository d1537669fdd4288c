"""Loop detection between the current frame and older submaps, with pose-graph correction."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path

import numpy as np

from scanslam2d.frame import Frame
from scanslam2d.geometry import SE2
from scanslam2d.multi_resolution_likelihood_field import MRLikelihoodField
from scanslam2d.optimizer import CauchyKernel, RelativePoseEdge, optimize_pose_graph
from scanslam2d.submap import Submap

logger = logging.getLogger(__name__)

_CANDIDATE_DISTANCE_TH = 15.0  # distance between a candidate frame and a submap centre
_SUBMAP_GAP = 1  # the most recent submaps this close in id are never checked
_LOOP_RK_DELTA = 1.0  # robust kernel threshold for loop edges
_SEQUENTIAL_INFORMATION = 1e4
_FIRST_ITERATIONS = 10
_SECOND_ITERATIONS = 5

LoopKey = tuple[int, int]


@dataclass
class LoopConstraint:
    """Relative pose T12 between two submaps found by loop detection."""

    id_submap1: int
    id_submap2: int
    relative_pose: SE2
    valid: bool = True


class LoopClosing:
    """Single-threaded loop closure over submaps.

    Candidates are older submaps whose centre lies near the current frame.
    Each candidate is matched with a multi-resolution likelihood field; a
    successful match adds a loop constraint and triggers a pose-graph
    optimisation, which may reject the loop again.
    """

    def __init__(self, debug_path=None) -> None:
        self._current_frame: Frame | None = None
        self._last_submap_id = 0
        self._submaps: dict[int, Submap] = {}
        self._submap_to_field: dict[Submap, MRLikelihoodField] = {}
        self._candidates: list[int] = []
        self._loop_constraints: dict[LoopKey, LoopConstraint] = {}
        self._has_new_loops = False
        self._debug_path = Path(debug_path) if debug_path is not None else None
        if self._debug_path is not None:
            self._debug_path.parent.mkdir(parents=True, exist_ok=True)
            self._debug_path.write_text("")

    def add_new_submap(self, submap: Submap) -> None:
        """Register the newest submap, which may still be under construction."""
        self._submaps[submap.id] = submap
        self._last_submap_id = submap.id

    def add_finished_submap(self, submap: Submap) -> None:
        """Build the matching field of a completed submap."""
        field = MRLikelihoodField()
        field.set_pose(submap.pose)
        field.set_field_image_from_occu_map(submap.occu_map.occupancy_grid())
        self._submap_to_field.setdefault(submap, field)

    def add_new_frame(self, frame: Frame) -> None:
        """Check ``frame`` for loops and correct the submap poses when one is found."""
        self._current_frame = frame
        if not self._detect_loop_candidates():
            return
        self._match_in_history_submaps()
        if self._has_new_loops:
            self._optimize()

    def loops(self) -> dict[LoopKey, LoopConstraint]:
        """A copy of the loop constraints, keyed by the pair of submap ids."""
        return {key: replace(c) for key, c in self._loop_constraints.items()}

    def has_new_loops(self) -> bool:
        """Whether the last frame produced a new loop."""
        return self._has_new_loops

    def _detect_loop_candidates(self) -> bool:
        self._has_new_loops = False
        if self._last_submap_id < _SUBMAP_GAP:
            return False

        self._candidates = []
        frame = self._current_frame
        frame_pos = frame.pose.translation()
        for submap_id, submap in sorted(self._submaps.items()):
            if self._last_submap_id - submap_id <= _SUBMAP_GAP:
                continue
            known = self._loop_constraints.get((submap_id, self._last_submap_id))
            if known is not None and known.valid:
                continue
            distance = float(np.linalg.norm(submap.pose.translation() - frame_pos))
            if distance < _CANDIDATE_DISTANCE_TH:
                logger.info(
                    "taking %d with %d, last submap id: %d",
                    frame.keyframe_id,
                    submap_id,
                    self._last_submap_id,
                )
                self._candidates.append(submap_id)
        return bool(self._candidates)

    def _match_in_history_submaps(self) -> None:
        frame = self._current_frame
        for candidate in self._candidates:
            submap = self._submaps[candidate]
            field = self._submap_to_field.get(submap)
            if field is None:
                raise KeyError(f"submap {candidate} has not been finished")
            field.set_source_scan(frame.scan)

            pose_in_target = submap.pose.inverse() * frame.pose  # T_S1_C
            aligned = field.align_g2o(pose_in_target)
            if aligned is not None:
                # T_S1_S2 = T_S1_C * T_C_W * T_W_S2
                relative = aligned * frame.pose.inverse() * self._submaps[self._last_submap_id].pose
                key = (candidate, self._last_submap_id)
                self._loop_constraints.setdefault(
                    key, LoopConstraint(candidate, self._last_submap_id, relative)
                )
                logger.info("adding loop from submap %d to %d", candidate, self._last_submap_id)
                self._has_new_loops = True

            pose = submap.pose
            self._write_debug(f"{frame.id} {candidate} {pose.x:g} {pose.y:g} {pose.theta:g}")

        self._candidates = []

    def _write_debug(self, line: str) -> None:
        if self._debug_path is None:
            return
        with self._debug_path.open("a") as out:
            out.write(line + "\n")

    def _optimize(self) -> None:
        poses = {submap_id: submap.pose for submap_id, submap in self._submaps.items()}
        edges: list[RelativePoseEdge] = []

        for i in range(self._last_submap_id):
            first, following = self._submaps[i], self._submaps[i + 1]
            edges.append(
                RelativePoseEdge(
                    i,
                    i + 1,
                    first.pose.inverse() * following.pose,
                    np.eye(3) * _SEQUENTIAL_INFORMATION,
                    None,
                )
            )

        loop_edges: dict[LoopKey, RelativePoseEdge] = {}
        for key, constraint in sorted(self._loop_constraints.items()):
            if not constraint.valid:
                continue
            first_id, second_id = key
            self._submaps[first_id], self._submaps[second_id]  # both must exist
            edge = RelativePoseEdge(
                first_id, second_id, constraint.relative_pose, np.eye(3), CauchyKernel(_LOOP_RK_DELTA)
            )
            edges.append(edge)
            loop_edges[key] = edge

        poses = optimize_pose_graph(poses, edges, _FIRST_ITERATIONS)

        inliers = 0
        for key, edge in loop_edges.items():
            chi2 = edge.chi2(poses[edge.id1], poses[edge.id2])
            if chi2 < _LOOP_RK_DELTA:
                logger.info("loop from %d to %d is correct, chi2: %g", key[0], key[1], chi2)
                edge.kernel = None
                self._loop_constraints[key].valid = True
                inliers += 1
            else:
                edge.level = 1
                logger.info("loop from %d to %d is invalid, chi2: %g", key[0], key[1], chi2)
                self._loop_constraints[key].valid = False

        poses = optimize_pose_graph(poses, edges, _SECOND_ITERATIONS)

        for submap_id, submap in self._submaps.items():
            submap.set_pose(poses[submap_id])
            submap.update_frame_pose_world()

        logger.info("loop inliers: %d/%d", inliers, len(self._loop_constraints))
        self._loop_constraints = {
            key: constraint for key, constraint in self._loop_constraints.items() if constraint.valid
        }