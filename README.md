# slammap

`slammap` handles the map side of a feature-based visual SLAM system. It
stores keyframes and 3-D map points. It links them into a covisibility graph
and a spanning tree. It also triangulates new points from matched keypoints
and finds loop candidates that stay consistent over several keyframes.

Poses are 4x4 world-to-camera `numpy` arrays. Positions are 3-vectors.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `slammap.world_map.Map` is a thread-safe container of keyframes and map
  points. It keeps them in insertion order. It also holds the reference map
  points, the highest keyframe id seen, a counter of big map changes, and
  the `map_update_lock` and `point_creation_lock` locks.
- `slammap.map_point.MapPoint` is a 3-D landmark. It holds:
  - its observations, as keyframe → keypoint index;
  - the mean viewing normal;
  - the distance range over which it can be seen, with `predict_scale`;
  - a representative descriptor and semantic descriptor.

  `MapPoint.replace` hands every observation over to another point.
  `descriptor_distance` gives the Hamming distance between byte descriptors.
- `slammap.keyframe` provides `KeyPoint` (x, y, octave) and `KeyFrame`.
  A keyframe holds:
  - its pose, camera centre and stereo centre;
  - its keypoints and feature grid, searched with `get_features_in_area`;
  - its map-point associations and covisibility weights, rebuilt by
    `update_connections`;
  - its spanning-tree parent and children, and its loop edges.

  `set_bad_flag` removes a keyframe and reattaches its children.
- `slammap.keyframe_database.KeyFrameDatabase` is an inverted index from
  visual words to keyframes. `detect_loop_candidates` and
  `detect_relocalization_candidates` score keyframes that share words with
  the query. Each score is summed with those of covisible neighbours.
- `slammap.map_drawer.MapDrawer` turns a map into plain arrays for any
  renderer:
  - point vertices, split into ordinary points and reference points;
  - keyframe frustums;
  - covisibility, spanning-tree and loop-edge segments;
  - the current camera's frustum and camera-to-world matrix.

  `frustum_segments` builds the camera glyph.
- `slammap.mapping_geometry` provides `skew_symmetric_matrix`,
  `fundamental_matrix` and `triangulate_linear`.
- `slammap.point_creation` provides two functions. `triangulate_match`
  checks the parallax, the depth in front of both cameras, the
  reprojection error and the scale consistency of one match.
  `create_map_points` turns the matches that pass into registered
  `MapPoint`s.
- `slammap.local_mapping.LocalMapping` looks after the local map:
  - the queue of new keyframes and `process_new_keyframe`;
  - culling of recent map points and of redundant keyframes;
  - the stop, release, reset and finish handshakes with other threads.
- `slammap.loop_detection` provides `min_covisible_score` and
  `ConsistencyTracker`. A candidate is accepted only after its
  covisibility group has matched one from the previous query several times
  in a row.
- `slammap.loop_closing.LoopClosing` queues keyframes, and `detect_loop`
  returns whether consistent loop candidates were found. `run` processes
  the queue until `request_finish` is called. It calls an optional
  `on_loop` callback for each detected loop.

## Vocabulary interface

No visual vocabulary is included; you supply one. It must provide
`score(bow_a, bow_b)`, and, for `KeyFrame.compute_bow`, also
`transform(descriptors, levels_up)` returning a `(bow_vector,
feature_vector)` pair. Bag-of-words vectors are mappings from word id to
weight.

## Example

```python
import numpy as np

from slammap.keyframe import KeyFrame
from slammap.world_map import Map

world = Map()
pose = np.eye(4)
pose[:3, 3] = [0.0, 0.0, -2.0]
keyframe = KeyFrame(pose=pose, world_map=world)
world.add_keyframe(keyframe)

print(keyframe.get_camera_center())  # [0. 0. 2.]
print(world.keyframes_in_map())      # 1
world.inform_new_big_change()
print(world.get_last_big_change_idx())  # 1
```

## What it does not do

The package covers bookkeeping, culling, triangulation and loop detection.
It has no command-line program. It leaves out these steps of a complete
SLAM system:

- feature extraction and descriptor matching;
- camera tracking and relocalization;
- local or global bundle adjustment;
- similarity-transform estimation and loop correction;
- pose-graph optimisation;
- a viewer window.

`LocalMapping` has no processing loop of its own; you call its steps
yourself. `LoopClosing` stops once a loop has been detected.