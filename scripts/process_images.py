"""CLI script for running the biomass pipeline on a batch of images.

This script loads each raw image together with the masks and detector boxes
produced ahead of time by the segmentation/detection models, estimates the
weight and volume of every object, saves overlay images and writes one
record per image to metrics.json.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import yaml
from PIL import Image, ImageOps
from tqdm import tqdm

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fishmass.biomass.species import SpeciesRepository
from fishmass.pipeline import BiomassPipeline, PipelineConfig, PipelineResult
from fishmass.preprocessing.calibration import ScaleReference, analyze_scale_distribution
from fishmass.preprocessing.segmentation import (
    StaticDetector,
    StaticSegmenter,
    load_detections,
    load_segmentation_results,
)
from fishmass.utils.visualization import (
    plot_biomass_distribution,
    plot_scale_distribution,
    save_measurement_figures,
)
from fishmass.visual.composer import (
    OutputMode,
    blend,
    describe_aggregate,
    join_descriptions,
    join_image_paths,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

IMAGE_PATTERNS = ("*.jpg", "*.JPG", "*.jpeg", "*.png")


class NumpyEncoder(json.JSONEncoder):
    """Custom encoder for NumPy data types."""
    def default(self, obj):
        if isinstance(obj, np.bool_):
            return bool(obj)
        elif isinstance(obj, np.integer):
            return int(obj)
        elif isinstance(obj, np.floating):
            return float(obj)
        elif isinstance(obj, (np.ndarray,)):
            return obj.tolist()
        return super(NumpyEncoder, self).default(obj)


def save_metrics_atomic(
    all_results: List[dict],
    metadata_path: Path,
) -> None:
    """Save metrics JSON atomically to prevent corruption on interruption.

    Writes to a temporary file first, then atomically renames it to the final
    file. This ensures the JSON file is never left in a half-written state.

    Args:
        all_results: List of result dictionaries to save
        metadata_path: Path to the metrics.json file
    """
    if metadata_path is None:
        return

    try:
        metadata_path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = metadata_path.with_suffix('.json.tmp')
        with open(temp_path, 'w') as f:
            json.dump(all_results, f, indent=2, cls=NumpyEncoder)

        temp_path.replace(metadata_path)
        logger.debug(f"Incrementally saved metrics to {metadata_path}")
    except Exception as e:
        logger.warning(f"Failed to save metrics incrementally: {e}")


def load_config(config_path: Path) -> dict:
    """Load configuration from YAML file."""
    with open(config_path, 'r') as f:
        return yaml.safe_load(f)


def load_image(image_path: Path) -> np.ndarray:
    """Load an image as RGB, applying its EXIF orientation."""
    with Image.open(image_path) as img:
        img = ImageOps.exif_transpose(img)
        return np.array(img.convert("RGB"))


def build_pipeline(
    image_stem: str,
    shape,
    masks_dir: Path,
    detections_dir: Optional[Path],
    pipeline_config: PipelineConfig,
    repository: SpeciesRepository,
) -> BiomassPipeline:
    """Wire file-backed collaborators for one image into a pipeline."""
    detections = []
    if detections_dir is not None:
        detections_path = detections_dir / f"{image_stem}.json"
        if detections_path.exists():
            detections = load_detections(detections_path)
        else:
            logger.debug(f"No detections for {image_stem}")

    return BiomassPipeline(
        config=pipeline_config,
        object_segmenter=StaticSegmenter(
            load_segmentation_results(masks_dir, image_stem, "fish", label="Fish", shape=shape)
        ),
        detector=StaticDetector(detections),
        reference_segmenter=StaticSegmenter(
            load_segmentation_results(masks_dir, image_stem, "coin", shape=shape)
        ),
        pile_segmenter=StaticSegmenter(
            load_segmentation_results(masks_dir, image_stem, "pile", label="Pile", shape=shape)
        ),
        repository=repository,
    )


def save_overlays(
    image: np.ndarray,
    result: PipelineResult,
    image_stem: str,
    overlay_dir: Path,
) -> List[Path]:
    """Save every analysis of a run blended onto the original image."""
    overlay_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for index, analysis in enumerate(result.analyses):
        path = overlay_dir / f"{image_stem}_result_{index}.png"
        Image.fromarray(blend(image, analysis.overlay)).save(path)
        paths.append(path)
    return paths


def build_record(
    image_path: Path,
    result: PipelineResult,
    overlay_paths: List[Path],
) -> dict:
    """One persisted record: title, joined overlay paths and descriptions, totals."""
    record = {
        "image": str(image_path),
        "title": result.title,
        "overlays": join_image_paths(overlay_paths),
        "descriptions": join_descriptions(result.analyses),
        "summary": describe_aggregate(result.aggregate),
        "aggregate": result.aggregate.summary_dict(),
    }
    if result.reference is not None:
        record["scale"] = {
            "pixels_per_unit": result.reference.pixels_per_unit,
            "method": result.reference.method.value,
            "calibrated": result.reference.calibrated,
            "dictionary": result.reference.dictionary,
        }
    return record


def process_all_images(
    raw_dir: Path,
    masks_dir: Path,
    detections_dir: Optional[Path],
    output_dir: Path,
    config: dict,
    analysis_mode: str,
    pipeline_config: PipelineConfig,
    repository: SpeciesRepository,
    save_qa: bool = False,
) -> None:
    """Process all images in raw directory.

    Args:
        raw_dir: Directory containing raw images
        masks_dir: Directory containing precomputed masks
        detections_dir: Directory containing precomputed detector boxes
        output_dir: Directory for overlays, metrics.json and QA plots
        config: Configuration dictionary
        analysis_mode: "individual", "piles" or "counts"
        pipeline_config: Pipeline settings
        repository: Species profiles
        save_qa: Also save one measurement figure per object into qa/objects
    """
    image_files = sorted({p for pattern in IMAGE_PATTERNS for p in raw_dir.glob(pattern)})

    if not image_files:
        logger.error(f"No images found in {raw_dir}")
        return

    logger.info(f"Found {len(image_files)} images to process")
    logger.info(f"Mode: {analysis_mode}, reference: {pipeline_config.reference_method.value}, "
                f"output: {pipeline_config.output_mode.value}")
    logger.info(f"Masks directory: {masks_dir}")
    logger.info(f"Output directory: {output_dir}")

    metadata_path = output_dir / "metrics.json"
    overlay_dir = output_dir / "overlays"
    qa_dir = output_dir / "qa"

    all_results = []
    references: List[ScaleReference] = []
    reference_images: List[Path] = []
    species_totals: Dict[str, Dict[str, float]] = {}
    successful = 0
    failed = 0

    try:
        for image_path in tqdm(image_files, desc="Processing images"):
            image_stem = image_path.stem
            try:
                image = load_image(image_path)
                pipeline = build_pipeline(
                    image_stem,
                    image.shape[:2],
                    masks_dir,
                    detections_dir,
                    pipeline_config,
                    repository,
                )
                if analysis_mode == "counts":
                    result = pipeline.run_counts(image)
                else:
                    result = pipeline.run(image)
                    references.append(result.reference)
                    reference_images.append(image_path)

                overlay_paths = save_overlays(image, result, image_stem, overlay_dir)
                if save_qa:
                    save_measurement_figures(image, result.aggregate, image_stem, qa_dir / "objects")
                all_results.append(build_record(image_path, result, overlay_paths))

                for summary in result.aggregate.summaries:
                    totals = species_totals.setdefault(
                        summary.species, {"count": 0, "weight_g": 0.0, "volume_cm3": 0.0}
                    )
                    totals["count"] += summary.count
                    totals["weight_g"] += summary.total_weight
                    totals["volume_cm3"] += summary.total_volume

                save_metrics_atomic(all_results, metadata_path)
                successful += 1
                logger.debug(f"Successfully processed {image_path.name}")
            except Exception as e:
                failed += 1
                logger.error(f"Failed to process {image_path.name}: {e}")
                all_results.append({"image": str(image_path), "error": str(e)})
    except KeyboardInterrupt:
        logger.warning("Processing interrupted by user (KeyboardInterrupt)")
        if all_results:
            logger.info("Saving metrics before exit...")
            save_metrics_atomic(all_results, metadata_path)
            logger.info(f"Metrics saved to {metadata_path}")
        raise

    save_metrics_atomic(all_results, metadata_path)

    logger.info(f"Processing summary:")
    logger.info(f"  Total images: {len(image_files)}")
    logger.info(f"  Successful: {successful}")
    logger.info(f"  Failed: {failed}")
    logger.info(f"Processing complete: {successful} successful, {failed} failed")

    qa_dir.mkdir(parents=True, exist_ok=True)
    if references:
        distribution = analyze_scale_distribution(
            references,
            outlier_threshold=config.get("calibration", {}).get("outlier_threshold", 2.0),
        )
        distribution["outlier_images"] = [
            str(reference_images[i]) for i in distribution["outlier_indices"]
        ]

        dist_path = output_dir / "scale_distribution.json"
        with open(dist_path, 'w') as f:
            json.dump(distribution, f, indent=2, cls=NumpyEncoder)
        logger.info(f"Saved distribution analysis to {dist_path}")

        plot_path = qa_dir / "scale_distribution.png"
        plot_scale_distribution(
            references,
            plot_path,
            outlier_indices=distribution["outlier_indices"],
            labels=[p.stem for p in reference_images],
        )
        logger.info(f"Saved distribution plot to {plot_path}")

        if distribution["outlier_indices"]:
            logger.warning(
                f"Found {len(distribution['outlier_indices'])} outliers in scale distribution. "
                f"These may indicate mis-detected reference objects."
            )

    plot_path = qa_dir / "biomass_distribution.png"
    plot_biomass_distribution(species_totals, plot_path)
    logger.info(f"Saved biomass plot to {plot_path}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Estimate weight and volume of fish in images from precomputed masks"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent / "configs" / "config.yaml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--raw-dir",
        type=Path,
        help="Directory containing raw images (overrides config)",
    )
    parser.add_argument(
        "--masks-dir",
        type=Path,
        help="Directory containing masks (overrides config)",
    )
    parser.add_argument(
        "--detections-dir",
        type=Path,
        help="Directory containing detector boxes as <image>.json (overrides config)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Directory to save overlays, metrics and QA plots (overrides config)",
    )
    parser.add_argument(
        "--mode",
        choices=["individual", "piles", "counts"],
        help="Analysis mode (overrides config)",
    )
    parser.add_argument(
        "--reference",
        choices=["coin", "aruco"],
        help="Scale reference method (overrides config)",
    )
    parser.add_argument(
        "--combined",
        action="store_true",
        help="Draw all objects of an image on a single overlay",
    )
    parser.add_argument(
        "--save-qa",
        action="store_true",
        help="Save a measurement figure for every object into <output-dir>/qa/objects",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = load_config(args.config)

    # Support both absolute paths (anywhere on system) and relative paths (to project root)
    project_root = Path(__file__).parent.parent

    def resolve_path(config_path: str) -> Path:
        """Resolve path from config, handling both absolute and relative paths."""
        path = Path(config_path)
        return path if path.is_absolute() else project_root / path

    data_config = config.get("data", {})
    raw_dir = args.raw_dir or resolve_path(data_config["raw_dir"])
    masks_dir = args.masks_dir or resolve_path(data_config["masks_dir"])
    detections_dir = args.detections_dir or (
        resolve_path(data_config["detections_dir"]) if data_config.get("detections_dir") else None
    )
    output_dir = args.output_dir or resolve_path(data_config["output_dir"])

    # Command-line flags override config entries
    config.setdefault("analysis", {})
    config.setdefault("calibration", {})
    if args.mode:
        config["analysis"]["mode"] = args.mode
    if args.reference:
        config["calibration"]["reference_method"] = args.reference
    if args.combined:
        config["analysis"]["output_mode"] = OutputMode.COMBINED.value

    pipeline_config = PipelineConfig.from_dict(config)
    analysis_mode = str(config["analysis"].get("mode", "individual")).lower()

    profiles_file = config.get("species", {}).get("profiles_file")
    if profiles_file:
        repository = SpeciesRepository.from_yaml(resolve_path(profiles_file))
    else:
        repository = SpeciesRepository()

    output_dir.mkdir(parents=True, exist_ok=True)

    process_all_images(
        raw_dir=raw_dir,
        masks_dir=masks_dir,
        detections_dir=detections_dir,
        output_dir=output_dir,
        config=config,
        analysis_mode=analysis_mode,
        pipeline_config=pipeline_config,
        repository=repository,
        save_qa=args.save_qa,
    )


if __name__ == "__main__":
    main()
