# sadmapping

An offline back end for building point-cloud maps from lidar keyframes. It
loads keyframes and optimises their poses with a pose graph made of RTK and
lidar odometry constraints. It then finds loop closures and checks each one
with multi-resolution NDT matching. Finally it exports the map, either as one
merged PCD file or as a grid of tiles.

## Installation

```
pip install .
pip install .[test]    # also installs pytest
```

## Data layout

Every tool works on one data directory. The default is `./data/ch9/`. It holds:

- `keyframes.txt`: one keyframe per line. The format is the one that
  `sadmapping.keyframe.save_keyframes` writes and `load_keyframes` reads.
- `<id>.pcd`: the scan of each keyframe. Scans may be ASCII or binary PCD and
  must hold `x y z` fields; an `intensity` field is used if it is present.
- `loops.txt`: the accepted loop candidates. The loop-closure stage writes it
  and stage 2 of the optimisation reads it.

Parameters come from a YAML file, by default `./config/mapping.yaml`. These
keys are read:

| Key | Read by |
| --- | --- |
| `rtk_outlier_th` | optimisation |
| `lidar_continuous_num` | optimisation |
| `rtk_has_rot` | optimisation |
| `rtk_pos_noise` | optimisation |
| `rtk_ang_noise` (degrees) | optimisation |
| `rtk_height_noise_ratio` | optimisation |
| `rtk_ext.t` (three values) | optimisation |
| `loop_closing.min_id_interval` | loop closure |
| `loop_closing.min_distance` | loop closure |
| `loop_closing.skip_id` | loop closure |
| `loop_closing.ndt_score_th` | loop closure |

## Pipeline

Run the stages in this order:

```
sad-optimize --stage 1
sad-loopclosure
sad-optimize --stage 2
sad-dump-map --pose_source opti2 --voxel_size 0.1
sad-split-map --voxel_size 0.1
```

What each stage does:

- **`sad-optimize --stage 1`** applies only when `rtk_has_rot` is false. It
  first aligns the lidar trajectory rigidly to the RTK positions. It then runs
  Levenberg-Marquardt twice, with outlier removal in between. The result goes
  into `opti_pose_1`, and `keyframes.txt` is rewritten. The graph is also
  saved in g2o text form, as `before.g2o` and `after.g2o`.
- **`sad-loopclosure`** pairs keyframes that are at least `min_id_interval`
  apart in id but closer than `min_distance` in the x-y plane. For each pair it
  matches the scan of the second keyframe against a ground-removed submap
  around the first, using NDT at resolutions 10, 5, 4 and 3 m. It writes to
  `loops.txt` only the pairs that score above `ndt_score_th`.
- **`sad-optimize --stage 2`** starts from `opti_pose_1`, adds the loop edges,
  and stores the result in `opti_pose_2`.
- **`sad-dump-map`** merges the voxel-filtered world-frame scans into
  `map.pcd`. The options are:
  - `--pose_source`: `lidar`, `rtk`, `opti1` or `opti2`.
  - `--voxel_size`: the voxel size.
  - `--data_dir`: the data directory.
  - `--dump_to`: the output directory.
- **`sad-split-map`** uses `opti_pose_2` and cuts the map into 100 m tiles.
  Tiles are offset by 50 m. It writes them as `map_data/<gx>_<gy>.pcd` together
  with `map_data/map_index.txt`. It takes `--map_path` and `--voxel_size`.
  Existing contents of `map_data/` are removed first.

`sad-optimize` and `sad-loopclosure` also accept `--config_yaml` and `--data_dir`.

## Library use

```python
from sadmapping.optimization import Optimization
from sadmapping.loopclosure import LoopClosure
from sadmapping.mapexport import dump_map

Optimization("./config/mapping.yaml").init(1).run()
LoopClosure("./config/mapping.yaml").init().run()
Optimization("./config/mapping.yaml").init(2).run()
merged = dump_map(pose_source="opti2")
```

The building blocks can also be used on their own:

- `sadmapping.geometry`: `SO3`, `SE3`, `NavState`, `hash_vec`, `mat4_to_se3`.
- `sadmapping.sensors`: `GNSS`, `IMU`, `Odom`, `DatasetType` and the topic-name lookups.
- `sadmapping.pointcloud`: `PointCloud`, `voxel_grid`, `remove_ground`,
  `load_pcd`, `save_pcd` (ASCII output).
- `sadmapping.keyframe`: `Keyframe`, `LoopCandidate`, and reading and writing
  of keyframe and loop files.
- `sadmapping.fitting`: plane and line fitting, mean/covariance statistics and
  small numeric helpers.
- `sadmapping.edges`: pose-graph vertices, residual edges, and the Huber and
  Cauchy robust kernels.
- `sadmapping.timer`: `Timer` and `evaluate_and_call`.

## What this package does not do

- It does not create keyframes from raw sensor data. It reads no sensor logs,
  runs no lidar-inertial odometry, and does not attach RTK poses to keyframes.
  You must supply `keyframes.txt` and the `<id>.pcd` scans.
- It has no pose interpolation over timed sequences.
- It has no helpers for rotation matrices beyond what `SO3` and `SE3` provide.
- It has no viewer or other graphical display.