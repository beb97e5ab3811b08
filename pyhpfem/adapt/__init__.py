from .adapt import Adapt
from .element_to_refine import ElementReference, ElementToRefine, RefinementType
from .error_forms import ErrorForm, ProjNormType
from .parameters import AdaptivityParameters, ErrorFlags, DEFAULT_ERROR_FLAGS
from .selectors import Selector, HOnlySelector, POnlySelector, ProjBasedSelector, CandList
__all__ = ['Adapt', 'ElementReference', 'ElementToRefine', 'RefinementType', 'ErrorForm',
           'ProjNormType', 'AdaptivityParameters', 'ErrorFlags', 'DEFAULT_ERROR_FLAGS',
           'Selector', 'HOnlySelector', 'POnlySelector', 'ProjBasedSelector', 'CandList']
