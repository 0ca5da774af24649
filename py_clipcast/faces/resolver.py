"""Identity resolution for one clip.

Handles:
- Clustering the clip's detections
- Matching each cluster against the identity registry (merge) or
  registering a new identity (create)
- Replaying stored assignments for clips that were already resolved
- Retracting a clip's earlier merges when it comes back with different detections
"""

from __future__ import annotations

import hashlib
import logging
from typing import Dict, Iterable, List, Optional

from py_clipcast.errors import DimensionMismatch

from .clustering import IntraClipClusterer
from .identity_registry import IdentityRegistry, RegistryTransaction
from .models import (
    ClipResolution,
    ClusterResolution,
    ClusteringConfig,
    FaceDetection,
    IntraClipCluster,
    MatchingConfig,
    ResolutionState,
    normalize_detections,
)
from .representative import RepresentativeSelector

LOGGER = logging.getLogger(__name__)


def detection_fingerprint(
    detections: Iterable[FaceDetection],
    clustering: ClusteringConfig,
    matching: MatchingConfig,
) -> str:
    """Hash of a clip's detection set plus the parameters that shape its result."""
    digest = hashlib.sha256()
    digest.update(f"eps={clustering.eps};min_samples={clustering.min_samples};".encode("utf-8"))
    digest.update(f"match={matching.match_threshold};".encode("utf-8"))
    for det in sorted(detections, key=lambda d: d.detection_id or ""):
        digest.update(f"{det.detection_id}|{det.timestamp!r}|{det.confidence!r}|".encode("utf-8"))
        digest.update(",".join(repr(float(v)) for v in det.embedding).encode("utf-8"))
        digest.update(b";")
    return digest.hexdigest()


class IdentityResolver:
    """Turns a clip's detections into identity assignments."""

    def __init__(
        self,
        registry: IdentityRegistry,
        clustering: Optional[ClusteringConfig] = None,
        matching: Optional[MatchingConfig] = None,
        selector: Optional[RepresentativeSelector] = None,
    ) -> None:
        self.registry = registry
        self.clustering = clustering or ClusteringConfig()
        self.matching = matching or MatchingConfig()
        self.clusterer = IntraClipClusterer(self.clustering)
        self.selector = selector or RepresentativeSelector()

    def resolve_clip(self, clip_id: str, detections: Iterable[FaceDetection | dict]) -> ClipResolution:
        """Resolve every detection of one clip to an identity.

        The whole clip runs inside one registry write section: either every
        cluster is committed or (on any error) nothing is.

        Raises:
            DimensionMismatch: embeddings disagree with each other or the registry.
            RegistryUnavailable: the registry store failed; retry the whole clip.
        """
        dets = normalize_detections(clip_id, detections)
        fingerprint = detection_fingerprint(dets, self.clustering, self.matching)

        with self.registry.write_section(clip_id) as txn:
            previous = txn.clip_entry(clip_id)
            if previous is not None and previous.fingerprint == fingerprint:
                LOGGER.info("Clip %s already resolved with identical detections; replaying", clip_id)
                return self._replay(clip_id, dets, previous.assignments, previous.clusters)
            if previous is not None:
                self._retract_previous(txn, clip_id)

            self._check_registry_dimension(clip_id, dets, txn)
            clusters = self.clusterer.cluster(clip_id, dets)

            resolutions: List[ClusterResolution] = []
            assigned: Dict[str, FaceDetection] = {}
            for cluster in sorted(clusters, key=lambda c: (c.earliest_timestamp, c.cluster_id)):
                resolution = self._resolve_cluster(txn, clip_id, cluster)
                resolutions.append(resolution)
                for member in cluster.members:
                    assigned[member.detection_id] = member.annotate(identity_id=resolution.identity_id)

            annotated = [assigned[d.detection_id] for d in dets if d.detection_id in assigned]
            txn.record_clip(
                clip_id,
                fingerprint,
                {d.detection_id: d.identity_id for d in annotated},
                resolutions,
            )

        result = ClipResolution(clip_id=clip_id, detections=annotated, clusters=resolutions)
        LOGGER.info(
            "Clip %s resolved: %d clusters -> %d identities (%d created, %d matched)",
            clip_id,
            len(resolutions),
            len(result.identity_ids),
            len(result.created_identity_ids),
            len(result.matched_identity_ids),
        )
        return result

    def _resolve_cluster(
        self,
        txn: RegistryTransaction,
        clip_id: str,
        cluster: IntraClipCluster,
    ) -> ClusterResolution:
        state = ResolutionState.UNRESOLVED
        match = txn.match_with_similarity(cluster.centroid, self.matching.match_threshold)

        if match is not None:
            identity, similarity = match
            state = ResolutionState.MATCHED
            # Each merge moves the centroid; later members see the updated value
            for member in cluster.members:
                txn.merge(identity.identity_id, member.embedding, member)
            identity_id = identity.identity_id
            LOGGER.debug(
                "Cluster %s (%d faces) matched %s (sim=%.3f)",
                cluster.cluster_id,
                cluster.size,
                identity_id,
                similarity,
            )
        else:
            similarity = None
            state = ResolutionState.CREATED
            representative = self.selector.select(cluster.members, cluster.centroid)
            identity = txn.create(cluster.centroid, representative, clip_id)
            for member in cluster.members:
                if member.detection_id == representative.detection_id:
                    continue
                txn.merge(identity.identity_id, member.embedding, member)
            identity_id = identity.identity_id
            LOGGER.debug(
                "Cluster %s (%d faces) created %s",
                cluster.cluster_id,
                cluster.size,
                identity_id,
            )

        return ClusterResolution(
            cluster_id=cluster.cluster_id,
            identity_id=identity_id,
            outcome=state,
            state=ResolutionState.ASSIGNED,
            similarity=similarity,
            size=cluster.size,
            member_ids=cluster.member_ids,
        )

    def _retract_previous(self, txn: RegistryTransaction, clip_id: str) -> None:
        previous = txn.retract_clip(clip_id)
        if previous is not None and previous.contributions:
            LOGGER.warning(
                "Clip %s was resolved before with different detections; retracted its earlier "
                "merges from %d identities (%d removed) and resolving again",
                clip_id,
                len(previous.contributions),
                len(txn.removed),
            )
        elif previous is not None and previous.assignments:
            # Ledger entry predates contribution tracking
            LOGGER.warning(
                "Clip %s was resolved before with different detections but its earlier merges "
                "cannot be retracted; identity counts and centroids will include both runs",
                clip_id,
            )

    def _check_registry_dimension(
        self,
        clip_id: str,
        detections: List[FaceDetection],
        txn: RegistryTransaction,
    ) -> None:
        if txn.dimension is None:
            return
        for det in detections:
            if det.dimension != txn.dimension:
                raise DimensionMismatch(
                    txn.dimension,
                    det.dimension,
                    context=f"clip {clip_id} detection {det.detection_id} vs registry",
                )

    def _replay(
        self,
        clip_id: str,
        detections: List[FaceDetection],
        assignments: Dict[str, str],
        clusters: List[ClusterResolution],
    ) -> ClipResolution:
        cluster_by_detection = {
            member_id: cluster.cluster_id for cluster in clusters for member_id in cluster.member_ids
        }
        annotated = [
            det.annotate(
                cluster_id=cluster_by_detection.get(det.detection_id),
                identity_id=assignments[det.detection_id],
            )
            for det in detections
            if det.detection_id in assignments
        ]
        return ClipResolution(
            clip_id=clip_id,
            detections=annotated,
            clusters=[c.model_copy(deep=True) for c in clusters],
            replayed=True,
        )


def resolve_clip_identities(
    clip_id: str,
    detections: Iterable[FaceDetection | dict],
    registry: IdentityRegistry,
    clustering: Optional[ClusteringConfig] = None,
    matching: Optional[MatchingConfig] = None,
) -> ClipResolution:
    """Resolve one clip against ``registry`` with the given (or default) config."""
    return IdentityResolver(registry, clustering, matching).resolve_clip(clip_id, detections)


__all__ = ["IdentityResolver", "detection_fingerprint", "resolve_clip_identities"]
