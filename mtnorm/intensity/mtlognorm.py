"""Multi-tissue log-domain intensity normalisation.

Jointly estimates a smooth multiplicative bias field and one global scale
factor per tissue from co-registered tissue density maps (e.g. the WM, GM and
CSF compartments of multi-tissue CSD).

The bias field is modelled as the exponential of a third order polynomial of
the scanner-space position. Scale factors are solved so that the scaled,
bias-corrected tissue densities sum to one, and outlier voxels are rejected
with a quartile fence on the log of that sum before the bias field is refit.
"""

import numpy as np
from nibabel.affines import apply_affine
from scipy import linalg as scipy_linalg

from mtnorm.utils.logging import logger

DEFAULT_NORM_VALUE = 0.282094
DEFAULT_MAX_ITER = 10
OUTLIER_FENCE = 1.6
CONVERGENCE_TOL = 1e-3
N_BASIS = 20


def _tissue_density(tissue):
    """Return the density volume of a 3D or 4D tissue map.

    Parameters
    ----------
    tissue : ndarray
        3D tissue map, or 4D map whose first volume holds the density
        (e.g. the l=0 term of a spherical harmonic tissue ODF).

    Returns
    -------
    density : ndarray
        3D float64 volume.
    """
    tissue = np.asarray(tissue)
    if tissue.ndim == 4:
        tissue = tissue[..., 0]
    return tissue.astype(np.float64)


def _check_inputs(tissues, mask, norm_value, max_iter):
    if len(tissues) < 2:
        raise ValueError("At least two tissue types must be provided")
    for i, tissue in enumerate(tissues):
        if np.ndim(tissue) not in (3, 4):
            raise ValueError(
                f"Tissue map {i} must be 3D or 4D, got {np.ndim(tissue)} dimensions"
            )
        if np.shape(tissue)[:3] != np.shape(tissues[0])[:3]:
            raise ValueError(
                f"Tissue map {i} shape {np.shape(tissue)[:3]} mismatch "
                f"{np.shape(tissues[0])[:3]}"
            )
    if np.shape(mask) != np.shape(tissues[0])[:3]:
        raise ValueError(
            f"Mask shape {np.shape(mask)} mismatch tissue maps "
            f"{np.shape(tissues[0])[:3]}"
        )
    if not norm_value > 0:
        raise ValueError("Intensity normalisation value must be strictly positive.")
    if int(max_iter) != max_iter or max_iter < 1:
        raise ValueError(f"max_iter must be a positive integer, got {max_iter}")


def _refine_mask(*, summed, initial_mask):
    """Keep the voxels of ``initial_mask`` with finite, positive signal.

    Parameters
    ----------
    summed : ndarray
        3D combined signal.
    initial_mask : ndarray
        3D boolean mask.

    Returns
    -------
    mask : ndarray
        3D boolean mask, a subset of ``initial_mask``.
    """
    with np.errstate(invalid="ignore"):
        return initial_mask & np.isfinite(summed) & (summed > 0)


def polynomial_basis(positions):
    """Evaluate the third order polynomial basis at scanner positions.

    Parameters
    ----------
    positions : ndarray
        Scanner-space coordinates, shape (..., 3).

    Returns
    -------
    basis : ndarray
        Basis values, shape (..., 20), ordered as
        1, x, y, z, x², y², z², xy, xz, yz, x³, y³, z³,
        x²y, x²z, y²x, y²z, z²x, z²y, xyz.
    """
    positions = np.asarray(positions, dtype=np.float64)
    x = positions[..., 0]
    y = positions[..., 1]
    z = positions[..., 2]
    return np.stack(
        [
            np.ones_like(x),
            x,
            y,
            z,
            x * x,
            y * y,
            z * z,
            x * y,
            x * z,
            y * z,
            x * x * x,
            y * y * y,
            z * z * z,
            x * x * y,
            x * x * z,
            y * y * x,
            y * y * z,
            z * z * x,
            z * z * y,
            x * y * z,
        ],
        axis=-1,
    )


def _lstsq_solve(*, X, y):
    """Solve min ||Xβ - y||² with a column-pivoted orthogonal factorisation.

    Parameters
    ----------
    X : ndarray
        Design matrix, shape (N, K).
    y : ndarray
        Target values, shape (N,).

    Returns
    -------
    beta : ndarray
        Coefficient vector, shape (K,). Minimum-norm when X is rank deficient.
    """
    cond = np.finfo(np.float64).eps * max(X.shape)
    beta, _, rank, _ = scipy_linalg.lstsq(X, y, cond=cond, lapack_driver="gelsy")
    if rank < X.shape[1]:
        logger.debug("Rank deficient least squares system (%d < %d)", rank, X.shape[1])
    if not np.all(np.isfinite(beta)):
        raise scipy_linalg.LinAlgError("Least squares solution is not finite")
    return beta


def _solve_scale_factors(*, tissues, bias_field, mask):
    """Solve the per-tissue scale factors for the current bias field.

    Parameters
    ----------
    tissues : ndarray
        Combined tissue volume, shape (X, Y, Z, N).
    bias_field : ndarray
        3D multiplicative bias field.
    mask : ndarray
        3D boolean working mask.

    Returns
    -------
    scale_factors : ndarray
        Strictly positive factors, shape (N,), with zero mean log.
    """
    X = tissues[mask] / bias_field[mask][:, None]
    y = np.ones(X.shape[0], dtype=np.float64)
    scale_factors = _lstsq_solve(X=X, y=y)

    for j, factor in enumerate(scale_factors):
        if factor <= 0:
            raise ValueError(
                "Non-positive tissue intensity normalisation scale factor was "
                f"computed. Tissue index: {j} Scale factor: {factor} "
                "Needs to be strictly positive!"
            )
    return scale_factors / np.exp(np.mean(np.log(scale_factors)))


def _scale_factors_converged(previous, current, *, tol=CONVERGENCE_TOL):
    """Mean absolute relative change of the scale factors is below ``tol``."""
    change = np.mean(np.abs(previous - current) / previous)
    logger.info("Percentage change in estimated scale factors: %.6f", change * 100)
    return change < tol


def _nearest_rank(n, q):
    # round half away from zero, as a sorted-index percentile
    return min(int(np.floor(n * q + 0.5)), n - 1)


def _quartile_fences(values, *, fence=OUTLIER_FENCE):
    """Return the lower and upper outlier fences of ``values``.

    Parameters
    ----------
    values : ndarray
        1D array of log-domain signal values.
    fence : float, optional
        Interquartile range multiplier.

    Returns
    -------
    lower, upper : float
        ``Q1 - fence * IQR`` and ``Q3 + fence * IQR``.
    """
    values = np.sort(values)
    n = values.size
    lower_quartile = values[_nearest_rank(n, 0.25)]
    upper_quartile = values[_nearest_rank(n, 0.75)]
    iqr = upper_quartile - lower_quartile
    return lower_quartile - fence * iqr, upper_quartile + fence * iqr


def _reject_outliers(*, tissues, scale_factors, bias_field, initial_mask, mask):
    """Remove voxels whose log combined signal lies outside the quartile fences.

    Parameters
    ----------
    tissues : ndarray
        Combined tissue volume, shape (X, Y, Z, N).
    scale_factors : ndarray
        Current scale factors, shape (N,).
    bias_field : ndarray
        3D multiplicative bias field.
    initial_mask : ndarray
        3D boolean mask the candidates are drawn from.
    mask : ndarray
        Current 3D boolean working mask.

    Returns
    -------
    mask : ndarray
        Updated working mask, a subset of the given one.
    n_voxels : int
        Number of voxels left in the mask.
    """
    combined = (tissues @ scale_factors) / bias_field
    refined = _refine_mask(summed=combined, initial_mask=initial_mask) & mask
    n_voxels = int(refined.sum())
    if not n_voxels:
        raise ValueError("Outlier rejection mask contains no voxels")

    log_combined = np.zeros(combined.shape, dtype=np.float64)
    log_combined[refined] = np.log(combined[refined])
    lower, upper = _quartile_fences(log_combined[refined])

    outliers = refined & ((log_combined < lower) | (log_combined > upper))
    n_voxels -= int(outliers.sum())
    logger.debug(
        "Outlier fences [%.6f, %.6f], %d voxels kept", lower, upper, n_voxels
    )
    return refined & ~outliers, n_voxels


def _eval_log_bias_field(*, weights, shape, affine):
    """Evaluate the polynomial log bias field at every voxel.

    The field is built one slab along the first axis at a time so the basis
    matrix never holds more than one slab.

    Parameters
    ----------
    weights : ndarray
        Basis weights, shape (20,).
    shape : tuple of int
        Volume shape (X, Y, Z).
    affine : ndarray
        4x4 voxel-to-scanner transform.

    Returns
    -------
    log_bias : ndarray
        3D log-domain bias field.
    """
    log_bias = np.empty(shape, dtype=np.float64)
    jj, kk = np.meshgrid(np.arange(shape[1]), np.arange(shape[2]), indexing="ij")
    slab_coords = np.column_stack([np.zeros(jj.size), jj.ravel(), kk.ravel()])
    for i in range(shape[0]):
        slab_coords[:, 0] = i
        positions = apply_affine(affine, slab_coords)
        log_bias[i] = (polynomial_basis(positions) @ weights).reshape(shape[1:])
    return log_bias


def _fit_bias_field(*, tissues, scale_factors, mask, affine, log_norm_value):
    """Fit the polynomial bias field to the log of the scaled tissue sum.

    Parameters
    ----------
    tissues : ndarray
        Combined tissue volume, shape (X, Y, Z, N).
    scale_factors : ndarray
        Scale factors, shape (N,).
    mask : ndarray
        3D boolean working mask.
    affine : ndarray
        4x4 voxel-to-scanner transform.
    log_norm_value : float
        Log of the value the tissue sum is normalised to.

    Returns
    -------
    weights : ndarray
        Basis weights, shape (20,).
    log_bias : ndarray
        3D log-domain bias field over the whole volume.
    bias_field : ndarray
        ``exp(log_bias)``.
    """
    n_voxels = int(mask.sum())
    if n_voxels < N_BASIS:
        logger.warning(
            "Only %d voxels to fit %d bias field basis functions", n_voxels, N_BASIS
        )
    positions = apply_affine(affine, np.argwhere(mask))
    X = polynomial_basis(positions)
    y = np.log(tissues[mask] @ scale_factors) - log_norm_value

    weights = _lstsq_solve(X=X, y=y)
    log_bias = _eval_log_bias_field(
        weights=weights, shape=mask.shape, affine=affine
    )
    return weights, log_bias, np.exp(log_bias)


def estimate_normalization(
    tissues,
    mask,
    *,
    affine=None,
    norm_value=DEFAULT_NORM_VALUE,
    max_iter=DEFAULT_MAX_ITER,
    independent=False,
):
    """Estimate tissue scale factors and the multiplicative bias field.

    Parameters
    ----------
    tissues : sequence of ndarray
        Two or more co-registered 3D tissue maps (or 4D maps whose first
        volume is the tissue density) with identical spatial shape.
    mask : ndarray
        3D binary mask to compute the normalisation within.
    affine : ndarray, optional
        4x4 voxel-to-scanner transform. Identity if None.
    norm_value : float, optional
        Value the summed tissue compartments are normalised to.
    max_iter : int, optional
        Bound on both the outer bias field passes and the inner scale factor
        iterations (each runs at most ``max_iter - 1`` times, at least once).
    independent : bool, optional
        Keep one scale factor per tissue. If False, all tissues share the
        geometric mean of the estimated factors.

    Returns
    -------
    scale_factors : ndarray
        Scale factor per tissue, shape (N,).
    bias_field : ndarray
        Estimated 3D multiplicative bias field.
    mask : ndarray
        Final 3D mask used to fit the bias field, outliers excluded.
    """
    _check_inputs(tissues, mask, norm_value, max_iter)
    if affine is None:
        affine = np.eye(4)
    mask = np.asarray(mask, dtype=bool)

    densities = [_tissue_density(tissue) for tissue in tissues]
    summed = np.sum(densities, axis=0)
    initial_mask = _refine_mask(summed=summed, initial_mask=mask)
    n_voxels = int(initial_mask.sum())
    if not n_voxels:
        raise ValueError("Error in automatic mask generation. Mask contains no voxels")

    combined = np.stack([np.maximum(d, 0.0) for d in densities], axis=-1)
    log_norm_value = np.log(norm_value)
    n_passes = max(int(max_iter) - 1, 1)

    bias_field = np.ones(mask.shape, dtype=np.float64)
    scale_factors = None
    working_mask = initial_mask

    for iteration in range(1, n_passes + 1):
        logger.info("Iteration: %d", iteration)
        working_mask = initial_mask.copy()
        n_voxels = int(working_mask.sum())

        for norm_iteration in range(1, n_passes + 1):
            logger.debug("Norm iteration: %d (%d voxels)", norm_iteration, n_voxels)
            previous = scale_factors
            scale_factors = _solve_scale_factors(
                tissues=combined, bias_field=bias_field, mask=working_mask
            )
            converged = iteration > 1 and _scale_factors_converged(
                previous, scale_factors
            )
            if converged and norm_iteration > 1:
                break
            # the reset mask goes through at least one rejection per pass
            working_mask, n_voxels = _reject_outliers(
                tissues=combined,
                scale_factors=scale_factors,
                bias_field=bias_field,
                initial_mask=initial_mask,
                mask=working_mask,
            )
            if converged:
                break

        logger.info("Scale factors: %s", scale_factors)
        _, _, bias_field = _fit_bias_field(
            tissues=combined,
            scale_factors=scale_factors,
            mask=working_mask,
            affine=affine,
            log_norm_value=log_norm_value,
        )

    if not independent:
        scale_factors = np.full_like(
            scale_factors, np.exp(np.mean(np.log(scale_factors)))
        )
    return scale_factors, bias_field, working_mask


def apply_normalization(tissues, scale_factors, bias_field):
    """Apply scale factors and bias field to the tissue maps.

    Parameters
    ----------
    tissues : sequence of ndarray
        3D or 4D tissue maps.
    scale_factors : ndarray
        Scale factor per tissue.
    bias_field : ndarray
        3D multiplicative bias field.

    Returns
    -------
    corrected : list of ndarray
        Float64 corrected maps, same shapes as the inputs. Negative values
        are clamped to 0 in every volume.
    """
    corrected = []
    for tissue, factor in zip(tissues, scale_factors):
        tissue = np.asarray(tissue, dtype=np.float64)
        if tissue.ndim == 4:
            out = factor * tissue / bias_field[..., None]
        else:
            out = factor * tissue / bias_field
        corrected.append(np.maximum(out, 0.0))
    return corrected


def mtlognorm(
    tissues,
    mask,
    *,
    affine=None,
    norm_value=DEFAULT_NORM_VALUE,
    max_iter=DEFAULT_MAX_ITER,
    independent=False,
    return_bias_field=False,
    return_mask=False,
):
    """Multi-tissue informed log-domain intensity normalisation.

    Intensity normalisation is performed by either determining a common
    global normalisation factor for all tissue types (default) or by
    normalising each tissue type independently with a single tissue-specific
    global scale factor. A smooth bias field is estimated jointly and removed
    from every tissue map.

    Parameters
    ----------
    tissues : sequence of ndarray
        Two or more co-registered 3D tissue maps (or 4D maps whose first
        volume is the tissue density) with identical spatial shape.
    mask : ndarray
        3D binary mask to compute the normalisation within, optimally a
        brain mask.
    affine : ndarray, optional
        4x4 voxel-to-scanner transform. Identity if None.
    norm_value : float, optional
        Value the summed tissue compartments are normalised to
        (default ``sqrt(1/(4*pi))``).
    max_iter : int, optional
        Number of iterations.
    independent : bool, optional
        Intensity normalise each tissue type independently.
    return_bias_field : bool, optional
        If True, return the bias field alongside the corrected maps.
    return_mask : bool, optional
        If True, return the final mask used to compute the bias field. It
        excludes outlier regions ignored by the fitting; these regions are
        still corrected based on the other image data.

    Returns
    -------
    corrected : list of ndarray
        Corrected tissue maps, in input order.
    scale_factors : ndarray
        Scale factor applied to each tissue map.
    bias_field : ndarray
        3D multiplicative bias field (only returned if
        return_bias_field=True).
    mask : ndarray
        3D final outlier-excluding mask (only returned if return_mask=True).
    """
    scale_factors, bias_field, final_mask = estimate_normalization(
        tissues,
        mask,
        affine=affine,
        norm_value=norm_value,
        max_iter=max_iter,
        independent=independent,
    )
    corrected = apply_normalization(tissues, scale_factors, bias_field)

    result = (corrected, scale_factors)
    if return_bias_field:
        result += (bias_field.copy(),)
    if return_mask:
        result += (final_mask.copy(),)
    return result
