"""Single 2D lidar scans and the frames that carry them."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from scanslam2d.geometry import SE2


@dataclass
class Scan2d:
    """One sweep of a planar range sensor."""

    angle_min: float = 0.0
    angle_max: float = 0.0
    angle_increment: float = 0.0
    range_min: float = 0.0
    range_max: float = 0.0
    ranges: list[float] = field(default_factory=list)

    def valid_points(self) -> Iterator[tuple[float, float]]:
        """Yield (range, angle) for every beam whose range is inside the sensor limits."""
        for index, value in enumerate(self.ranges):
            if value < self.range_min or value > self.range_max:
                continue
            yield value, self.angle_min + index * self.angle_increment


@dataclass(eq=False)
class Frame:
    """A scan together with its identifiers and poses."""

    scan: Scan2d | None = None
    id: int = 0
    keyframe_id: int = 0
    timestamp: float = 0.0
    pose: SE2 = field(default_factory=SE2)  # world to scan
    pose_submap: SE2 = field(default_factory=SE2)  # submap to scan

    def dump(self, path) -> None:
        """Write the frame to a text file that :meth:`load` can read back."""
        if self.scan is None:
            raise ValueError("frame has no scan to dump")
        scan = self.scan
        lines = [
            f"{self.id} {self.keyframe_id} {self.timestamp!r}",
            f"{self.pose.x!r} {self.pose.y!r} {self.pose.theta!r}",
            " ".join(
                repr(float(v))
                for v in (
                    scan.angle_min,
                    scan.angle_max,
                    scan.angle_increment,
                    scan.range_min,
                    scan.range_max,
                )
            )
            + f" {len(scan.ranges)}",
            " ".join(repr(float(r)) for r in scan.ranges),
        ]
        Path(path).write_text("\n".join(lines) + "\n")

    @classmethod
    def load(cls, path) -> Frame:
        """Read a frame written by :meth:`dump`."""
        tokens = iter(Path(path).read_text().split())

        def take(convert):
            try:
                return convert(next(tokens))
            except StopIteration:
                raise ValueError(f"{path}: frame file is truncated") from None

        frame_id = take(int)
        keyframe_id = take(int)
        timestamp = take(float)
        x, y, theta = take(float), take(float), take(float)
        angle_min, angle_max, angle_increment = take(float), take(float), take(float)
        range_min, range_max = take(float), take(float)
        count = take(int)
        ranges = [take(float) for _ in range(count)]
        scan = Scan2d(angle_min, angle_max, angle_increment, range_min, range_max, ranges)
        return cls(
            scan=scan,
            id=frame_id,
            keyframe_id=keyframe_id,
            timestamp=timestamp,
            pose=SE2(x, y, theta),
        )


def _beam_angles(scan: Scan2d) -> list[float]:
    return [scan.angle_min + i * scan.angle_increment for i in range(len(scan.ranges))]


__all__ = ["Scan2d", "Frame"]
_ = math  # keep math available for angle helpers