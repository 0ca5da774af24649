"""Intra-clip face clustering.

Handles:
- Grouping one clip's face detections into candidate people (DBSCAN over
  cosine distance)
- Promoting DBSCAN noise points to singleton clusters
- Assigning stable, clip-local cluster IDs
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

import numpy as np
from sklearn.cluster import DBSCAN

from py_clipcast.errors import DimensionMismatch
from py_clipcast.vector_math import centroid, pairwise_cosine_distances

from .models import ClusteringConfig, FaceDetection, IntraClipCluster

LOGGER = logging.getLogger(__name__)


class IntraClipClusterer:
    """Density-based grouping of one clip's detections."""

    def __init__(self, config: Optional[ClusteringConfig] = None):
        self.config = config or ClusteringConfig()

    def cluster(self, clip_id: str, detections: Sequence[FaceDetection]) -> List[IntraClipCluster]:
        """Partition detections into candidate person clusters.

        Detections are ordered by (timestamp, input position) before DBSCAN
        runs. DBSCAN expands clusters in index order, so a border point
        reachable from two clusters joins the one whose seed is earliest.

        Returns:
            Clusters ordered by earliest member timestamp, with members in
            timestamp order and annotated with their cluster_id. Zero
            detections yield zero clusters.
        """
        if not detections:
            LOGGER.info("No face detections for clip %s; nothing to cluster", clip_id)
            return []

        dim = detections[0].dimension
        for det in detections:
            if det.dimension != dim:
                raise DimensionMismatch(dim, det.dimension, context=f"clip {clip_id} detection {det.detection_id}")

        order = sorted(range(len(detections)), key=lambda i: (detections[i].timestamp, i))
        ordered = [detections[i] for i in order]

        labels = self._dbscan_labels(ordered)

        groups: Dict[int, List[int]] = defaultdict(list)
        noise: List[int] = []
        for idx, label in enumerate(labels):
            if label < 0:
                noise.append(idx)
            else:
                groups[int(label)].append(idx)

        # (member indices, is_noise); indices are already in timestamp order
        raw_clusters = [(members, False) for members in groups.values()]
        raw_clusters.extend(([idx], True) for idx in noise)
        raw_clusters.sort(key=lambda item: item[0][0])

        clusters: List[IntraClipCluster] = []
        for n, (members, is_noise) in enumerate(raw_clusters, start=1):
            cluster_id = f"{clip_id}_c{n:02d}"
            member_dets = [ordered[i].annotate(cluster_id=cluster_id) for i in members]
            clusters.append(
                IntraClipCluster(
                    cluster_id=cluster_id,
                    members=member_dets,
                    centroid=centroid([d.embedding for d in member_dets]),
                    is_noise=is_noise,
                )
            )

        LOGGER.info(
            "Clip %s: %d detections -> %d clusters (%d singleton noise)",
            clip_id,
            len(detections),
            len(clusters),
            len(noise),
        )
        return clusters

    def _dbscan_labels(self, ordered: Sequence[FaceDetection]) -> np.ndarray:
        matrix = np.vstack([d.embedding_array() for d in ordered])
        distances = pairwise_cosine_distances(matrix)
        model = DBSCAN(
            eps=self.config.eps,
            min_samples=self.config.min_samples,
            metric="precomputed",
        )
        return model.fit_predict(distances)


def cluster_clip_faces(
    clip_id: str,
    detections: Sequence[FaceDetection],
    config: Optional[ClusteringConfig] = None,
) -> List[IntraClipCluster]:
    """Cluster one clip's detections with the given (or default) config."""
    return IntraClipClusterer(config).cluster(clip_id, detections)


__all__ = ["IntraClipClusterer", "cluster_clip_faces"]
