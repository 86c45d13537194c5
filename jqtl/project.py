"""
Projects: the R workspace plus everything jqtl knows about it (crosses, QTL
baskets and the R command history), saved together as one zip bundle.
"""
import os
import tempfile
import xml.etree.ElementTree as ET
import zipfile
from typing import Dict, List, Optional

from jqtl.basket import MarkerPairQtlBasketItem, QtlBasket, SingleMarkerQtlBasketItem
from jqtl.cross import Cross, GeneticMarker, GeneticMarkerPair
from jqtl.log import logger
from jqtl.r import RInterface, r_string


PROJECT_XML = "project.xml"
WORKSPACE_RDATA = "workspace.RData"
PROJECT_EXTENSION = ".jqtl"


class QtlDataModel:
    """The crosses living in an R workspace, one `Cross` per name across refreshes."""

    def __init__(self, r: RInterface):
        self.r = r
        self._crosses: Dict[str, Cross] = {}

    def refresh(self) -> List[Cross]:
        names = self.r.top_level_objects_of_class("cross")
        crosses = {}
        for name in names:
            cross = self._crosses.get(name)
            if cross is None:
                cross = Cross(self.r, name)
            else:
                cross.refresh()
            crosses[name] = cross
        self._crosses = crosses
        return list(crosses.values())

    def crosses(self) -> List[Cross]:
        return self.refresh()

    def cross(self, name: str) -> Optional[Cross]:
        if name not in self._crosses:
            self.refresh()
        return self._crosses.get(name)


def _marker_element(parent: ET.Element, marker: GeneticMarker):
    ET.SubElement(parent, "marker", {
        "markerName": marker.name,
        "chromosomeName": "" if marker.chromosome is None else str(marker.chromosome),
        "markerPositionCentimorgans": repr(float(marker.position_cm)),
    })


def _marker_from_element(element: ET.Element) -> GeneticMarker:
    chromosome = element.get("chromosomeName") or None
    return GeneticMarker(element.get("markerName"), chromosome,
                         float(element.get("markerPositionCentimorgans", "0")))


class QtlProject:
    def __init__(self, r: RInterface, name: str = "Untitled Project"):
        self.r = r
        self.name = name
        self.data_model = QtlDataModel(r)

    def crosses(self) -> List[Cross]:
        return self.data_model.crosses()

    def cross(self, name: str) -> Cross:
        cross = self.data_model.cross(name)
        if cross is None:
            raise ValueError(f"Cross '{name}' not found in project {self.name}")
        return cross

    # metadata

    def to_xml(self) -> ET.Element:
        root = ET.Element("qtlProject", {"projectName": self.name})
        history = ET.SubElement(root, "rHistory")
        for line in self.r.history:
            ET.SubElement(history, "item").text = line
        for cross in self.crosses():
            cross_element = ET.SubElement(root, "cross", {"crossIdentifier": cross.accessor})
            for basket in cross.qtl_baskets.values():
                basket_element = ET.SubElement(cross_element, "qtlBasket", {"basketName": basket.name})
                for item in basket.contents:
                    item_element = ET.SubElement(basket_element, "item", {"comment": item.comment})
                    for marker in item.markers():
                        _marker_element(item_element, marker)
        return root

    def restore_metadata(self, root: ET.Element):
        self.name = root.get("projectName", self.name)
        history = root.find("rHistory")
        if history is not None:
            self.r.history = [item.text or "" for item in history.findall("item")]
        for cross_element in root.findall("cross"):
            identifier = cross_element.get("crossIdentifier")
            cross = self.data_model.cross(identifier)
            if cross is None:
                logger.warning(f"could not find a cross named {identifier} in the workspace, skipping its baskets")
                continue
            for basket_element in cross_element.findall("qtlBasket"):
                basket = QtlBasket(cross, basket_element.get("basketName"))
                for item_element in basket_element.findall("item"):
                    markers = [_marker_from_element(m) for m in item_element.findall("marker")]
                    comment = item_element.get("comment", "")
                    if len(markers) == 1:
                        basket.contents.append(SingleMarkerQtlBasketItem(markers[0], comment))
                    elif len(markers) == 2:
                        basket.contents.append(MarkerPairQtlBasketItem(GeneticMarkerPair(*markers), comment))
                    else:
                        logger.error(f"basket item with {len(markers)} markers in basket {basket.name} is skipped")
                cross.qtl_baskets[basket.name] = basket

    # bundle

    def save(self, path: str) -> str:
        """
        Write the project bundle (project.xml + workspace.RData).

        :param path: bundle file, `.jqtl` is appended when there is no extension
        """
        if not os.path.splitext(path)[1]:
            path += PROJECT_EXTENSION
        path = os.path.abspath(path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with tempfile.TemporaryDirectory() as tmp:
            workspace = os.path.join(tmp, WORKSPACE_RDATA)
            self.r.evaluate_no_return(f"save.image(file={r_string(workspace)})", silent=True)
            xml_bytes = ET.tostring(self.to_xml(), encoding="utf-8", xml_declaration=True)
            with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as bundle:
                bundle.writestr(PROJECT_XML, xml_bytes)
                bundle.write(workspace, WORKSPACE_RDATA)
        logger.info(f"Project saved to: {path}")
        return path

    @classmethod
    def load(cls, r: RInterface, path: str) -> "QtlProject":
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Project file not found: {path}")
        logger.info(f"Loading project: {path}")
        with zipfile.ZipFile(path) as bundle:
            names = bundle.namelist()
            if PROJECT_XML not in names or WORKSPACE_RDATA not in names:
                raise ValueError(f"{path} is not a jqtl project (missing {PROJECT_XML} or {WORKSPACE_RDATA})")
            root = ET.fromstring(bundle.read(PROJECT_XML))
            with tempfile.TemporaryDirectory() as tmp:
                workspace = bundle.extract(WORKSPACE_RDATA, tmp)
                r.evaluate_no_return(f"load({r_string(workspace)}, envir = globalenv())", silent=True)
        project = cls(r)
        project.restore_metadata(root)
        return project

    def export_r_script(self, path: str) -> str:
        lines = ["library(qtl)", ""]
        lines.extend(self.r.history)
        with open(path, "w") as f:
            f.write("\n".join(lines) + "\n")
        logger.info(f"R script saved to: {path}")
        return path
