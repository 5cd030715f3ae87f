"""Detection of signal in noise and its segmentation into clumps and objects."""

from astromesh.detection.sky import SkyEstimate, estimate_sky
from astromesh.detection.labels import (
    full_footprint,
    cross_footprint,
    erode,
    dilate,
    open_binary,
    label_binary,
    filter_and_relabel,
    relabel_by_size,
)
from astromesh.detection.detect import Detector, DetectionResult, pseudo_detection_sn
from astromesh.detection.clumps import RIVER, oversegment, clump_sn, grow_labels, neighbour_offsets
from astromesh.detection.segment import Segmenter, SegmentationResult, group_clumps, river_pair_sn

__all__ = [
    'SkyEstimate',
    'estimate_sky',
    'full_footprint',
    'cross_footprint',
    'erode',
    'dilate',
    'open_binary',
    'label_binary',
    'filter_and_relabel',
    'relabel_by_size',
    'Detector',
    'DetectionResult',
    'pseudo_detection_sn',
    'RIVER',
    'oversegment',
    'clump_sn',
    'grow_labels',
    'neighbour_offsets',
    'Segmenter',
    'SegmentationResult',
    'group_clumps',
    'river_pair_sn',
]
