from pathlib import Path

from dipy.io.image import load_nifti, save_nifti
from dipy.workflows.workflow import Workflow
import numpy as np

from mtnorm.intensity.mtlognorm import DEFAULT_MAX_ITER, DEFAULT_NORM_VALUE, mtlognorm
from mtnorm.utils.logging import logger


class MTNormalizeFlow(Workflow):
    @classmethod
    def get_short_name(cls):
        return "mtnormalize"

    def run(
        self,
        input_files,
        mask_file,
        value=DEFAULT_NORM_VALUE,
        max_iter=DEFAULT_MAX_ITER,
        independent=False,
        save_bias=False,
        save_mask=False,
        out_dir="",
        out_bias_field="bias_field.nii.gz",
        out_mask="outlier_mask.nii.gz",
    ):
        """Multi-tissue informed log-domain intensity normalisation.

        Inputs N tissue components (e.g. from multi-tissue CSD) and outputs
        N corrected tissue components. Intensity normalisation is performed
        by either determining a common global normalisation factor for all
        tissue types (default) or by normalising each tissue type
        independently with a single tissue-specific global scale factor.

        Example usage: mtnorm_normalize wm.nii.gz wm_norm.nii.gz gm.nii.gz
        gm_norm.nii.gz csf.nii.gz csf_norm.nii.gz mask.nii.gz

        Parameters
        ----------
        input_files : variable string
            List of all input and output tissue compartment files, an output
            file following every input file. Any number (at least two) of
            tissues can be normalised.
        mask_file : string
            Mask to compute the normalisation within, optimally a brain mask.
        value : float, optional
            Value to which the summed tissue compartments will be normalised
            (default sqrt(1/(4*pi))).
        max_iter : int, optional
            Number of iterations.
        independent : bool, optional
            Intensity normalise each tissue type independently.
        save_bias : bool, optional
            Save the estimated bias field.
        save_mask : bool, optional
            Save the final mask used to compute the bias field. This mask
            excludes outlier regions ignored by the bias field fitting
            procedure. However, these regions are still corrected for bias
            fields based on the other image data.
        out_dir : string or Path, optional
            Output directory.
        out_bias_field : string, optional
            Name of the bias field volume to be saved.
        out_mask : string, optional
            Name of the outlier mask volume to be saved.
        """
        if isinstance(input_files, (str, Path)):
            input_files = [input_files]
        if len(input_files) % 2:
            raise ValueError(
                "The number of input arguments must be even. There must be an "
                "output file provided for every input tissue image"
            )
        if len(input_files) < 4:
            raise ValueError("At least two tissue types must be provided")

        in_paths = list(input_files[::2])
        out_paths = [Path(out_dir) / name for name in input_files[1::2]]
        bias_out_path = Path(out_dir) / out_bias_field
        mask_out_path = Path(out_dir) / out_mask

        self.flat_outputs = list(out_paths)
        if save_bias:
            self.flat_outputs.append(bias_out_path)
        if save_mask:
            self.flat_outputs.append(mask_out_path)
        self.last_generated_outputs = self.flat_outputs
        if not self.manage_output_overwrite():
            return

        tissues = []
        headers = []
        affine = None
        for fpath in in_paths:
            logger.info(f"Loading tissue map {fpath}")
            data, tissue_affine, img = load_nifti(fpath, return_img=True)
            if tissues and data.shape[:3] != tissues[0].shape[:3]:
                raise ValueError(
                    f"Tissue map {fpath} shape {data.shape[:3]} mismatch "
                    f"{tissues[0].shape[:3]}"
                )
            if affine is None:
                affine = tissue_affine
            tissues.append(data)
            headers.append(img.header)

        mask, _ = load_nifti(mask_file)
        mask = mask.astype(bool)

        corrected, scale_factors, bias_field, final_mask = mtlognorm(
            tissues,
            mask,
            affine=affine,
            norm_value=float(value),
            max_iter=int(max_iter),
            independent=bool(independent),
            return_bias_field=True,
            return_mask=True,
        )

        if save_bias:
            save_nifti(str(bias_out_path), bias_field.astype(np.float32), affine)
            logger.info(f"Bias field saved as {bias_out_path}")

        if save_mask:
            save_nifti(str(mask_out_path), final_mask.astype(np.float32), affine)
            logger.info(f"Outlier mask saved as {mask_out_path}")

        for out_path, data, hdr, factor in zip(
            out_paths, corrected, headers, scale_factors
        ):
            hdr = hdr.copy()
            hdr.set_data_dtype(np.float32)
            hdr.set_slope_inter(1, 0)
            hdr["descrip"] = f"normalisation_scale_factor={factor:.6g}"
            save_nifti(str(out_path), data.astype(np.float32), affine, hdr=hdr)
            logger.info(
                f"Normalised tissue map saved as {out_path} "
                f"(scale factor {factor:.6g})"
            )
