"""Visualization utilities for QA plots.

This module provides functions for:
- Measurement QA: mask overlay with the oriented box on the original image
- Per-object measurement figures for a whole run
- Per-image scales of a batch with fallback images and outliers marked
- Per-species biomass totals of a batch
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np

from fishmass.biomass.estimator import AggregateResult
from fishmass.preprocessing.calibration import ScaleReference
from fishmass.preprocessing.geometry import binarize_mask

logger = logging.getLogger(__name__)


def visualize_measurement(
    image: np.ndarray,
    mask: np.ndarray,
    corners: Optional[Sequence[Tuple[float, float]]],
    label: str,
    output_path: Path,
    dpi: int = 150,
) -> None:
    """Visualize one measured object: mask overlay and oriented box.

    Args:
        image: Original image
        mask: Binary object mask
        corners: Oriented box corners from the measurement (may be None)
        label: Text shown as the panel title (e.g. species and weight)
        output_path: Path to save visualization
        dpi: Resolution for saved figure
    """
    fig, axes = plt.subplots(1, 2, figsize=(12, 6))

    if image.ndim == 3:
        axes[0].imshow(image)
    else:
        axes[0].imshow(image, cmap='gray')
    axes[0].set_title('Original Image', fontsize=12, fontweight='bold')
    axes[0].axis('off')

    binary = binarize_mask(mask)
    if image.ndim == 3:
        overlay = image[:, :, :3].astype(np.float32)
        mask_colored = np.zeros_like(overlay)
        mask_colored[:, :, 1] = binary * 255  # Green channel
        overlay = np.clip(overlay * 0.7 + mask_colored * 0.3, 0, 255).astype(np.uint8)
        axes[1].imshow(overlay)
    else:
        axes[1].imshow(image, cmap='gray')
        axes[1].imshow(binary, alpha=0.5, cmap='Greens')

    if corners is not None and len(corners) == 4:
        polygon = np.array(list(corners) + [corners[0]])
        axes[1].plot(polygon[:, 0], polygon[:, 1], color='white', linewidth=2)

    axes[1].set_title(label, fontsize=12, fontweight='bold')
    axes[1].axis('off')

    plt.tight_layout()
    plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
    plt.close()

    logger.debug(f"Saved measurement visualization to {output_path}")


def save_measurement_figures(
    image: np.ndarray,
    aggregate: AggregateResult,
    image_stem: str,
    output_dir: Path,
    dpi: int = 100,
) -> List[Path]:
    """Write one measurement figure per estimated object of a run.

    Objects without a mask are left out.

    Returns:
        Paths of the saved figures, in object order
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for index, estimate in enumerate(aggregate.objects):
        if estimate.mask is None:
            continue
        label = (
            f"{estimate.species}: {estimate.measurement.length_units:.1f}cm, "
            f"{estimate.weight:.0f}g"
        )
        path = output_dir / f"{image_stem}_object_{index}.png"
        visualize_measurement(image, estimate.mask, estimate.measurement.corners, label, path, dpi=dpi)
        paths.append(path)
    return paths


def plot_scale_distribution(
    references: Sequence[ScaleReference],
    output_path: Path,
    outlier_indices: Sequence[int] = (),
    labels: Optional[Sequence[str]] = None,
    dpi: int = 150,
) -> None:
    """Per-image scales of a batch, with fallback images and outliers marked.

    Args:
        references: One ScaleReference per image, in processing order
        output_path: Path to save the plot
        outlier_indices: Indices into ``references`` flagged by analyze_scale_distribution
        labels: Optional short image names used to annotate outliers
        dpi: Resolution for saved figure
    """
    fig, (ax_images, ax_hist) = plt.subplots(1, 2, figsize=(13, 5))

    index = np.arange(len(references))
    scales = np.array([r.pixels_per_unit for r in references], dtype=np.float64)
    calibrated = np.array([r.calibrated for r in references], dtype=bool)
    outliers = [i for i in outlier_indices if 0 <= i < len(references)]

    if len(references) == 0:
        ax_images.text(0.5, 0.5, 'No images', ha='center', va='center')
        ax_hist.text(0.5, 0.5, 'No images', ha='center', va='center')
    else:
        ax_images.scatter(index[calibrated], scales[calibrated], color='tab:blue',
                          label=f'Reference found ({int(calibrated.sum())})')
        ax_images.scatter(index[~calibrated], scales[~calibrated], color='gray', marker='x',
                          label=f'Fallback scale ({int((~calibrated).sum())})')
        if outliers:
            ax_images.scatter(index[outliers], scales[outliers], s=160, facecolors='none',
                              edgecolors='red', linewidths=2, label=f'Outlier ({len(outliers)})')
            for i in outliers:
                name = labels[i] if labels is not None else str(i)
                ax_images.annotate(name, (index[i], scales[i]), textcoords='offset points',
                                   xytext=(5, 8), fontsize=8, color='red')
        ax_images.set_xlabel('Image')
        ax_images.set_ylabel('Pixels per cm')
        ax_images.set_title('Scale per Image', fontweight='bold')
        ax_images.legend(fontsize=8)
        ax_images.grid(True, alpha=0.3)

        if calibrated.any():
            found = scales[calibrated]
            ax_hist.hist(found, bins=min(30, max(5, len(found))), edgecolor='black', alpha=0.7)
            ax_hist.axvline(np.median(found), color='red', linestyle='--',
                            label=f'Median: {np.median(found):.2f}')
            ax_hist.set_title(
                f'Reference Scales (std {np.std(found):.2f})', fontweight='bold'
            )
        else:
            ax_hist.set_title('No reference found in any image', fontweight='bold')
        if (~calibrated).any():
            ax_hist.axvline(scales[~calibrated][0], color='gray', linestyle=':',
                            label=f'Fallback: {scales[~calibrated][0]:.2f}')
        ax_hist.set_xlabel('Pixels per cm')
        ax_hist.set_ylabel('Images')
        ax_hist.legend(fontsize=8)
        ax_hist.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
    plt.close()

    logger.debug(f"Saved scale distribution plot to {output_path}")


def plot_biomass_distribution(
    species_totals: Dict[str, Dict[str, float]],
    output_path: Path,
    dpi: int = 150,
) -> None:
    """Bar charts of total weight (kg) and count per species over a batch.

    Args:
        species_totals: ``{species: {"count": n, "weight_g": w, "volume_cm3": v}}``
        output_path: Path to save the plot
        dpi: Resolution for saved figure
    """
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    if not species_totals:
        axes[0].text(0.5, 0.5, 'No objects detected', ha='center', va='center')
        axes[1].text(0.5, 0.5, 'No objects detected', ha='center', va='center')
    else:
        ordered = sorted(species_totals.items(), key=lambda item: item[1]["weight_g"], reverse=True)
        names = [name for name, _ in ordered]
        weights_kg = [totals["weight_g"] / 1000.0 for _, totals in ordered]
        counts = [totals["count"] for _, totals in ordered]

        axes[0].bar(names, weights_kg, edgecolor='black', alpha=0.7)
        axes[0].set_ylabel('Total weight (kg)')
        axes[0].set_title('Approx Biomass per Species', fontweight='bold')
        axes[0].tick_params(axis='x', rotation=45)
        axes[0].grid(True, axis='y', alpha=0.3)

        axes[1].bar(names, counts, color='tab:orange', edgecolor='black', alpha=0.7)
        axes[1].set_ylabel('Count')
        axes[1].set_title('Objects per Species', fontweight='bold')
        axes[1].tick_params(axis='x', rotation=45)
        axes[1].grid(True, axis='y', alpha=0.3)

    plt.tight_layout()
    plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
    plt.close()

    logger.debug(f"Saved biomass distribution plot to {output_path}")
