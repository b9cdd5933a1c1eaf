from typing import Any, Callable, Dict, Literal, Optional, Union

import numba
import numpy as np
from scanpy import logging as logg

from .._errors import DegenerateInputError, InsufficientControlGenesError

# Below this many distinct x values local smoothing degenerates
MIN_SMOOTHING_POINTS = 10
MAD_TO_SD = 1.4826


@numba.njit()
def _weighted_median(x: np.ndarray, w: np.ndarray) -> float:
    sorted_idx = np.argsort(x)
    x_sorted = x[sorted_idx]
    w_cum = np.cumsum(w[sorted_idx])
    w_total = w_cum[-1]

    med_idx = np.searchsorted(w_cum, (w_total / 2))
    if med_idx >= (len(x) - 1):
        return x_sorted[-1]
    elif w_cum[med_idx] == (w_total / 2):
        return np.mean(x_sorted[med_idx : med_idx + 2])
    else:
        return x_sorted[med_idx]


def weighted_median(
    x: np.ndarray, w: Optional[np.ndarray] = None, na_rm: bool = False
) -> float:
    _x = np.asarray(x, dtype=np.float64)
    _w = np.ones_like(_x) if w is None else np.asarray(w, dtype=np.float64)
    if na_rm:
        mask = ~np.isnan(_x)
        _x = _x[mask]
        _w = _w[mask]
    if _x.shape[0] == 0:
        return np.nan

    return _weighted_median(_x, _w)


def inverse_density_weights(
    x: np.ndarray,
    bw_method: Union[Literal["scott", "silverman"], float] = "silverman",
) -> np.ndarray:
    from scipy.stats import gaussian_kde

    _x = np.asarray(x)
    density = gaussian_kde(_x, bw_method=bw_method)(_x)
    w = 1.0 / np.clip(density, a_min=1e-10, a_max=None)
    return w / np.mean(w)


def weighted_lowess(
    x: np.ndarray,
    y: np.ndarray,
    w: Optional[np.ndarray] = None,
    span: float = 0.3,
    degree: int = 1,
    iter: int = 4,
) -> Dict[str, np.ndarray]:
    from skmisc import loess

    _x = np.asarray(x)
    _y = np.asarray(y)
    _w = None if w is None else np.asarray(w)
    params = dict(weights=_w, span=span, degree=degree, iterations=iter)

    # Create and fit the LOESS model
    model = loess.loess(_x, _y, **params)
    model.fit()
    fitted = model.predict(_x, stderror=True).values

    return {
        "fitted": fitted,
        "residual": _y - fitted,
        "x": _x,
        "y": _y,
        "weights": _w,
    }


def _polynomial_func(
    x: np.ndarray, y: np.ndarray, w: Optional[np.ndarray], degree: int
) -> Callable:
    # np.polyfit weights multiply residuals, not squared residuals
    coef = np.polyfit(x, y, deg=degree, w=(None if w is None else np.sqrt(w)))
    return np.poly1d(coef)


def _spline_func(
    x: np.ndarray, y: np.ndarray, w: Optional[np.ndarray], basis_size: int
) -> Callable:
    from scipy.interpolate import make_lsq_spline

    # x must be strictly increasing
    k = 3
    n_coef = max(k + 1, min(basis_size, x.shape[0] - 1))
    n_interior = n_coef - (k + 1)
    interior = np.quantile(x, np.linspace(0.0, 1.0, n_interior + 2)[1:-1])
    t = np.concatenate([[x[0]] * (k + 1), interior, [x[-1]] * (k + 1)])
    # make_lsq_spline weights multiply residuals, not squared residuals
    return make_lsq_spline(x, y, t, k=k, w=(None if w is None else np.sqrt(w)))


class TrendCurve:
    """Fitted smooth trend, evaluable at arbitrary points.

    Inside the range of the fit points the trend follows the fitted smoother;
    outside it the edge values are held constant.
    """

    def __init__(
        self,
        x: np.ndarray,
        y: np.ndarray,
        fitted: np.ndarray,
        func: Callable,
        method: str,
        span: Optional[float] = None,
        weights: Optional[np.ndarray] = None,
    ):
        self._x = _readonly(x)
        self._y = _readonly(y)
        self._fitted = _readonly(fitted)
        self._weights = None if weights is None else _readonly(weights)
        self._func = func
        self._method = method
        self._span = span
        self._x_min = float(np.min(x))
        self._x_max = float(np.max(x))
        self._std_dev = self._relative_sd()

    def __call__(self, x: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
        _x = np.asarray(x, dtype=np.float64)
        vals = np.asarray(self._func(np.clip(_x, self._x_min, self._x_max)))
        vals = np.where(np.isnan(_x), np.nan, vals)
        return float(vals) if vals.ndim == 0 else vals

    def __repr__(self) -> str:
        return (
            f"TrendCurve(method={self._method!r}, n_points={self._x.shape[0]}, "
            f"range=({self._x_min:.3g}, {self._x_max:.3g}))"
        )

    def _relative_sd(self) -> float:
        pos = self._fitted > 0.0
        if not np.any(pos):
            return np.nan
        leftovers = self._y[pos] / self._fitted[pos]
        w = None if self._weights is None else self._weights[pos]
        return weighted_median(np.abs(leftovers - 1.0), w, na_rm=True) * MAD_TO_SD

    @property
    def x(self) -> np.ndarray:
        return self._x

    @property
    def y(self) -> np.ndarray:
        return self._y

    @property
    def fitted(self) -> np.ndarray:
        return self._fitted

    @property
    def residuals(self) -> np.ndarray:
        return self._y - self._fitted

    @property
    def method(self) -> str:
        return self._method

    @property
    def span(self) -> Optional[float]:
        return self._span

    @property
    def std_dev(self) -> float:
        """Robust scale of ``y / fitted - 1`` over the fit points."""
        return self._std_dev

    @property
    def domain(self) -> tuple[float, float]:
        return self._x_min, self._x_max

    def to_dict(self) -> Dict[str, Any]:
        return dict(
            method=self._method,
            span=self._span,
            std_dev=self._std_dev,
            x=np.array(self._x),
            y=np.array(self._y),
            fitted=np.array(self._fitted),
        )


def _readonly(a: np.ndarray) -> np.ndarray:
    ret = np.array(a, dtype=np.float64, copy=True)
    ret.flags.writeable = False
    return ret


class TrendFitter:
    """Class for fitting smooth one-dimensional trends."""

    method: str = "loess"
    span: float = 0.3
    degree: int = 1
    basis_size: int = 5
    use_density_weights: bool = False

    def __init__(
        self,
        method: Literal["loess", "spline"] = "loess",
        span: float = 0.3,
        degree: int = 1,
        basis_size: int = 5,
        use_density_weights: bool = False,
        iterations: int = 4,
    ):
        assert method in ["loess", "spline"], f"invalid 'method' provided: {method}."
        assert (span > 0.0) and (span <= 1.0), f"'span' must be between 0 and 1: {span}"
        assert degree in [1, 2], f"'degree' must be 1 or 2: {degree}"
        assert basis_size >= 4, f"'basis_size' must be at least 4: {basis_size}"
        self.method = method
        self.span = span
        self.degree = degree
        self.basis_size = basis_size
        self.use_density_weights = use_density_weights
        self.iterations = iterations

    @classmethod
    def from_config(cls, config) -> "TrendFitter":
        return cls(
            method=config.smoothing_method,
            span=config.span,
            degree=config.degree,
            basis_size=config.basis_size,
            use_density_weights=config.use_density_weights,
        )

    def effective_span(self, n: int) -> float:
        return min(1.0, max(self.span, 4 * (self.degree + 1) / n))

    def fit(self, x: np.ndarray, y: np.ndarray) -> TrendCurve:
        """
        Fit a smooth trend of ``y`` on ``x``.

        Tied x values are collapsed to their mean y before smoothing. A loess
        fit that fails falls back to the spline, and a failed spline to a
        global polynomial.

        Args:
            x: Predictor values, e.g. mean log-expression of control genes
            y: Response values, e.g. total variance of control genes

        Returns:
            TrendCurve evaluable at any real-valued input

        Raises:
            InsufficientControlGenesError: Fewer than 2 points
            DegenerateInputError: All points share one x value
        """
        _x = np.asarray(x, dtype=np.float64).ravel()
        _y = np.asarray(y, dtype=np.float64).ravel()
        if _x.shape != _y.shape:
            raise ValueError(
                f"x and y differ in length: {_x.shape[0]} and {_y.shape[0]}."
            )
        if not (np.all(np.isfinite(_x)) and np.all(np.isfinite(_y))):
            raise ValueError("x and y must be finite.")
        n = _x.shape[0]
        if n < 2:
            raise InsufficientControlGenesError(
                f"need at least 2 points for fitting, got {n}."
            )
        n_unique = np.unique(_x).shape[0]
        if n_unique < 2:
            raise DegenerateInputError(
                f"all {n} points share the same x value ({_x[0]}), cannot fit a trend."
            )

        w = (
            inverse_density_weights(_x, bw_method=1.0)
            if self.use_density_weights
            else None
        )

        # Smoothers see one point per distinct x: mean y, weighted by the
        # number (or summed density weight) of points sharing that x
        ux, inverse = np.unique(_x, return_inverse=True)
        base_w = np.ones_like(_x) if w is None else w
        uw = np.bincount(inverse, weights=base_w)
        uy = np.bincount(inverse, weights=base_w * _y) / uw

        func, method, span = self._smooth(ux, uy, uw)
        return TrendCurve(_x, _y, func(_x), func, method=method, span=span, weights=w)

    def _smooth(
        self, ux: np.ndarray, uy: np.ndarray, uw: np.ndarray
    ) -> tuple[Callable, str, Optional[float]]:
        n_unique = ux.shape[0]
        if n_unique >= MIN_SMOOTHING_POINTS:
            if self.method == "loess":
                from scipy.interpolate import PchipInterpolator

                span = self.effective_span(n_unique)
                try:
                    lfit = weighted_lowess(
                        ux, uy, w=uw, span=span, degree=self.degree, iter=self.iterations
                    )
                    func = PchipInterpolator(x=ux, y=lfit["fitted"], extrapolate=False)
                    return func, "loess", span
                except ValueError as e:
                    logg.warning(f"loess fit failed ({e}), falling back to spline")

            try:
                return _spline_func(ux, uy, uw, self.basis_size), "spline", None
            except (ValueError, np.linalg.LinAlgError) as e:
                logg.warning(f"spline fit failed ({e}), falling back to polynomial")

        deg = min(self.degree, n_unique - 1)
        logg.debug(f"{n_unique} distinct x values, fitting degree {deg} polynomial")
        return _polynomial_func(ux, uy, uw, deg), "polynomial", None


def fit_trend(
    x: np.ndarray,
    y: np.ndarray,
    method: Literal["loess", "spline"] = "loess",
    span: float = 0.3,
    degree: int = 1,
    basis_size: int = 5,
    use_density_weights: bool = False,
) -> TrendCurve:
    return TrendFitter(
        method=method,
        span=span,
        degree=degree,
        basis_size=basis_size,
        use_density_weights=use_density_weights,
    ).fit(x, y)
