"""
=====================================================================
Multi-Tissue Intensity Normalisation and Bias Field Correction
=====================================================================

Multi-tissue constrained spherical deconvolution produces one density map
per tissue compartment (typically white matter, grey matter and CSF). Two
things keep those maps from being comparable across subjects:

* a smooth multiplicative **bias field** left by the receive coil
  sensitivity, shared by every compartment, and
* an unknown global **scale** per compartment, since each response function
  carries its own intensity level.

Both are estimated jointly from the observation that, in a healthy voxel, the
properly scaled compartments add up to a constant:

.. math::

   \\sum_j s_j \\, T_j(\\mathbf{x}) = c \\cdot B(\\mathbf{x})

The bias field :math:`B` is modelled as the exponential of a third order
polynomial of the scanner coordinates (20 parameters). Voxels whose summed
signal does not fit the model (lesions, vessels, partial voluming with the
background) are rejected with an interquartile range fence in the log domain
before each fit.

This example builds a synthetic three-tissue phantom, corrupts it with a
bias field and per-tissue scale factors, and recovers both.
"""

import matplotlib.pyplot as plt
import numpy as np

from mtnorm.intensity.mtlognorm import DEFAULT_NORM_VALUE, mtlognorm

###############################################################################
# Build a synthetic three-tissue phantom
# ---------------------------------------
# A spherical "brain" with a white matter core, a grey matter shell and CSF
# at the border. Partial volume fractions sum to one inside the sphere.

shape = (40, 48, 36)
affine = np.diag([2.0, 2.0, 2.0, 1.0])
affine[:3, 3] = -np.array(shape) + 1.0

xx, yy, zz = np.mgrid[: shape[0], : shape[1], : shape[2]].astype(float)
centre = (np.array(shape) - 1) / 2.0
r = np.sqrt(
    ((xx - centre[0]) / 16) ** 2
    + ((yy - centre[1]) / 20) ** 2
    + ((zz - centre[2]) / 15) ** 2
)
mask = r < 1.0

wm = np.clip(1.4 - 2.0 * r, 0, 1)
csf = np.clip(3.0 * r - 2.0, 0, 1)
gm = np.clip(1.0 - wm - csf, 0, 1)
fractions = [f * mask for f in (wm, gm, csf)]

###############################################################################
# Corrupt it
# ----------
# The true scale factors below are hidden from the estimation. The bias field
# is a smooth gradient along the x and z axes, stronger than what is usually
# seen on a modern scanner.

true_scales = np.array([1.0, 1.4, 0.6])
pos = np.stack([xx, yy, zz], axis=-1) @ affine[:3, :3].T + affine[:3, 3]
true_bias = np.exp(
    0.01 * pos[..., 0] + 0.006 * pos[..., 2] - 1e-4 * pos[..., 1] ** 2
)

rng = np.random.default_rng(0)
noise = np.exp(rng.normal(0, 0.02, shape))
tissues = [f / s * true_bias * noise for f, s in zip(fractions, true_scales)]

###############################################################################
# Normalise
# ---------
# ``independent=True`` keeps one factor per tissue, which lets us compare the
# estimates with the ground truth. By default all tissues share the geometric
# mean of the factors, so only the bias field and a global scale are removed.

corrected, scale_factors, bias_field, final_mask = mtlognorm(
    tissues,
    mask,
    affine=affine,
    independent=True,
    return_bias_field=True,
    return_mask=True,
)

print(f"True scale factor ratios     : {true_scales / true_scales[0]}")
print(f"Estimated scale factor ratios: {scale_factors / scale_factors[0]}")
print(f"Voxels kept by outlier rejection: {final_mask.sum()} / {mask.sum()}")

summed_before = np.sum(tissues, axis=0)
summed_after = np.sum(corrected, axis=0)
for label, summed in (("before", summed_before), ("after", summed_after)):
    vals = summed[mask]
    print(f"Summed tissue CoV {label:6s}: {vals.std() / vals.mean():.4f}")
print(f"Mean summed tissue after     : {summed_after[mask].mean():.4f}")
print(f"Target value                 : {DEFAULT_NORM_VALUE}")

###############################################################################
# Visualise
# ---------
# The top row shows the summed tissue densities before and after correction,
# the bottom row the true and the estimated bias field (normalised to unit
# mean inside the mask, since the global level is absorbed by the target
# value).

mid = shape[2] // 2
est = bias_field / bias_field[mask].mean()
true = true_bias / true_bias[mask].mean()

fig, axes = plt.subplots(2, 2, figsize=(9, 9))
fig.suptitle("Multi-tissue log-domain normalisation", fontsize=13)

panels = [
    (axes[0, 0], summed_before, "Summed tissues (input)", "gray"),
    (axes[0, 1], summed_after, "Summed tissues (corrected)", "gray"),
    (axes[1, 0], true * mask, "True bias field", "RdBu_r"),
    (axes[1, 1], est * mask, "Estimated bias field", "RdBu_r"),
]
for ax, img, title, cmap in panels:
    ax.imshow(img[:, :, mid].T, cmap=cmap, origin="lower")
    ax.set_title(title)
    ax.axis("off")

plt.tight_layout()
plt.savefig("multi_tissue_normalization.png", dpi=100, bbox_inches="tight")
