from typing import Callable, List, Optional

import pandas as pd

from jqtl.cross import Cross, GeneticMarker, GeneticMarkerPair
from jqtl.fit import FitPredictor
from jqtl.log import logger


class QtlBasketItem:
    def __init__(self, comment: str = ""):
        self.comment = comment or ""

    def markers(self) -> List[GeneticMarker]:
        raise NotImplementedError

    def fit_predictor(self) -> FitPredictor:
        return FitPredictor(interacting_markers=self.markers())


class SingleMarkerQtlBasketItem(QtlBasketItem):
    def __init__(self, marker: GeneticMarker, comment: str = ""):
        super().__init__(comment)
        self.marker = marker

    def markers(self) -> List[GeneticMarker]:
        return [self.marker]

    def __repr__(self):
        return f"SingleMarkerQtlBasketItem({self.marker!r}, {self.comment!r})"


class MarkerPairQtlBasketItem(QtlBasketItem):
    def __init__(self, marker_pair: GeneticMarkerPair, comment: str = ""):
        super().__init__(comment)
        self.marker_pair = marker_pair

    def markers(self) -> List[GeneticMarker]:
        return [self.marker_pair.marker_one, self.marker_pair.marker_two]

    def __repr__(self):
        return f"MarkerPairQtlBasketItem({self.marker_pair!r}, {self.comment!r})"


class QtlBasket:
    """
    A named, ordered collection of candidate loci belonging to one cross.

    Listeners are called with the basket whenever its contents change.
    """

    def __init__(self, parent_cross: Cross, name: str):
        self.parent_cross = parent_cross
        self.name = name
        self.contents: List[QtlBasketItem] = []
        self._listeners: List[Callable[["QtlBasket"], None]] = []

    def __len__(self):
        return len(self.contents)

    def __iter__(self):
        return iter(self.contents)

    def __repr__(self):
        return f"QtlBasket({self.name!r}, cross={self.parent_cross.accessor!r}, items={len(self.contents)})"

    def add_listener(self, listener: Callable[["QtlBasket"], None]):
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[["QtlBasket"], None]):
        self._listeners.remove(listener)

    def notify_contents_changed(self):
        for listener in list(self._listeners):
            listener(self)

    def add(self, item: QtlBasketItem):
        self.contents.append(item)
        logger.debug(f"added {item!r} to basket {self.name}")
        self.notify_contents_changed()

    def remove(self, item: QtlBasketItem):
        self.contents.remove(item)
        self.notify_contents_changed()

    def remove_at(self, index: int) -> QtlBasketItem:
        item = self.contents.pop(index)
        self.notify_contents_changed()
        return item

    def fit_predictors(self) -> List[FitPredictor]:
        return [item.fit_predictor() for item in self.contents]

    def to_frame(self) -> pd.DataFrame:
        records = []
        for item in self.contents:
            markers = item.markers()
            second: Optional[GeneticMarker] = markers[1] if len(markers) > 1 else None
            records.append({
                "marker1": markers[0].name,
                "chr1": markers[0].chromosome,
                "pos1": markers[0].position_cm,
                "marker2": second.name if second else None,
                "chr2": second.chromosome if second else None,
                "pos2": second.position_cm if second else None,
                "comment": item.comment,
            })
        return pd.DataFrame(records, columns=["marker1", "chr1", "pos1", "marker2", "chr2", "pos2", "comment"])
