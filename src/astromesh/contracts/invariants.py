"""Formal pipeline invariants.

Documents what each stage MUST produce. Use it as a reviewer anchor and
system reference; the checks live in the stage modules of this package.
"""

PIPELINE_INVARIANTS = {
    "load": [
        "Input is a 2-D or 3-D DataBuffer with at least one pixel",
        "Integer BLANK values are translated to the type's blank",
    ],

    "convolution": [
        "Convolved image has the input shape and a float type",
        "Blank input pixels stay blank",
    ],

    "detection": [
        "Labels are integers of the input shape, 0 = undetected",
        "Labels run 1..num_detections",
        "Sky and sky std images cover the input",
    ],

    "segmentation": [
        "objects > 0 implies detected",
        "clumps > 0 implies objects > 0",
        "Object ids run 1..num_objects",
        "Each clump has exactly one host object",
    ],

    "catalog": [
        "One row per object (and per clump), ordered by id",
        "Blank rows have area 0 and NaN measurements",
        "area_with_blank equals the pixel count of the label",
    ],

    "database": [
        "One SQLite table per catalog kind ('objects', 'clumps')",
        "Every row carries the file_id of its image",
    ],
}

# Which stages are optional vs required
STAGE_REQUIREMENTS = {
    "load": "REQUIRED",
    "convolution": "REQUIRED",
    "detection": "REQUIRED",
    "segmentation": "OPTIONAL",  # segmentation.enabled
    "catalog": "OPTIONAL",       # catalog.enabled
    "database": "OPTIONAL",      # only when a catalog exists
}
