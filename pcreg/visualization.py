"""Visualization utilities for ICP results."""

import logging

import matplotlib.pyplot as plt
import numpy as np

logger = logging.getLogger(__name__)


def plot_convergence(history, angle_threshold=None, translation_threshold=None,
                     save_path='icp_convergence.png', title=None, show=True):
    """
    Plot the incremental rotation and translation of every ICP iteration.

    Args:
        history: List of (angle in degrees, translation norm) per iteration
        angle_threshold: Optional rotation threshold drawn as a line
        translation_threshold: Optional translation threshold drawn as a line
        save_path: Path to save the plot, None to skip saving
        title: Optional plot title
        show: Display the figure

    Returns:
        Matplotlib figure
    """
    history = np.asarray(history, dtype=np.float64).reshape(-1, 2)
    iterations = np.arange(1, len(history) + 1)
    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(14, 6))

    ax1.semilogy(iterations, history[:, 0], marker='o', linewidth=2, markersize=4,
                 color='#2E86AB', label='Rotation delta')
    if angle_threshold is not None:
        ax1.axhline(y=angle_threshold, color='red', linestyle='--', linewidth=1.5,
                    alpha=0.7, label=f'Threshold ({angle_threshold}°)')
    ax1.set_xlabel('Iteration', fontsize=12)
    ax1.set_ylabel('Angle (degrees)', fontsize=12)
    ax1.set_title('Incremental Rotation', fontsize=14, fontweight='bold')
    ax1.grid(True, alpha=0.3)
    ax1.legend(loc='best')

    ax2.semilogy(iterations, history[:, 1], marker='o', linewidth=2, markersize=4,
                 color='#A23B72', label='Translation delta')
    if translation_threshold is not None:
        ax2.axhline(y=translation_threshold, color='red', linestyle='--', linewidth=1.5,
                    alpha=0.7, label=f'Threshold ({translation_threshold})')
    ax2.set_xlabel('Iteration', fontsize=12)
    ax2.set_ylabel('Translation', fontsize=12)
    ax2.set_title('Incremental Translation', fontsize=14, fontweight='bold')
    ax2.grid(True, alpha=0.3)
    ax2.legend(loc='best')

    fig.suptitle(title or f'ICP Convergence ({len(history)} iterations)', fontsize=14)
    fig.tight_layout()
    if save_path is not None:
        fig.savefig(save_path, dpi=150)
        logger.info("Convergence plot saved to '%s'", save_path)
    if show:
        plt.show()
    return fig
