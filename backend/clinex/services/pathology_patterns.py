"""Declarative neurosurgical pathology pattern library.

Each pathology profile lists:
- primary-mention patterns (the condition itself)
- location patterns (where it is)
- subtype patterns (grade/stage/score) in priority order
- known complication names and procedure vocabulary
- fields a complete record for this pathology is expected to carry

Detection scores every profile as
``0.4 x primary hits + 0.2 x location hits + 0.1 x procedure hits``.
"""

import re
from dataclasses import dataclass, field

from clinex.schemas.base import PathologyType

ROMAN_NUMERALS: dict[str, int] = {
    "i": 1, "ii": 2, "iii": 3, "iv": 4, "v": 5, "vi": 6,
}

PRIMARY_WEIGHT = 0.4
LOCATION_WEIGHT = 0.2
PROCEDURE_WEIGHT = 0.1


def roman_to_int(value: str) -> int | None:
    """Convert "3" or "III" to 3; None if neither."""
    value = value.strip().lower()
    if value.isdigit():
        return int(value)
    return ROMAN_NUMERALS.get(value)


@dataclass(frozen=True)
class SubtypePattern:
    """One subtype/grade pattern.

    ``kind`` controls value coercion of capture group 1:
    "grade" (arabic or roman numeral -> int), "upper", "lower" or "number".
    """

    category: str
    pattern: str
    kind: str = "grade"
    min_value: int | None = None
    max_value: int | None = None


@dataclass(frozen=True)
class PathologyPattern:
    """Pattern profile for one pathology type."""

    pathology: PathologyType
    display_name: str
    primary_patterns: tuple[str, ...]
    location_patterns: tuple[str, ...] = ()
    subtype_patterns: tuple[SubtypePattern, ...] = ()
    complications: tuple[str, ...] = ()
    procedure_patterns: tuple[str, ...] = ()
    expected_fields: tuple[str, ...] = ()
    compiled: dict[str, list[re.Pattern]] = field(
        default_factory=dict, compare=False, hash=False, repr=False
    )

    def __post_init__(self) -> None:
        self.compiled["primary"] = [re.compile(p, re.IGNORECASE) for p in self.primary_patterns]
        self.compiled["location"] = [re.compile(p, re.IGNORECASE) for p in self.location_patterns]
        self.compiled["procedure"] = [re.compile(p, re.IGNORECASE) for p in self.procedure_patterns]

    def count_hits(self, text: str) -> dict[str, int]:
        """Count primary, location and procedure hits in text."""
        return {
            group: sum(len(p.findall(text)) for p in patterns)
            for group, patterns in self.compiled.items()
        }

    def score(self, text: str) -> tuple[float, dict[str, int]]:
        """Weighted detection score and the hit breakdown."""
        hits = self.count_hits(text)
        value = (
            PRIMARY_WEIGHT * hits["primary"]
            + LOCATION_WEIGHT * hits["location"]
            + PROCEDURE_WEIGHT * hits["procedure"]
        )
        return round(value, 4), hits


_GRADE_1_5 = r"(?:of\s+)?([1-5]|iv|v|i{1,3})\b"
_WHO_GRADE = SubtypePattern(
    "WHO_GRADE", r"\bwho\s+(?:cns\s*)?grade\s+(iv|i{1,3}|[1-4])\b", min_value=1, max_value=4
)


# Fields every record is expected to have regardless of pathology
GENERIC_EXPECTED_FIELDS: tuple[str, ...] = (
    "demographics.age",
    "demographics.sex",
    "dates.admission",
    "dates.discharge",
    "procedures",
    "medications",
    "functional_scores",
    "discharge.disposition",
)


PATHOLOGY_LIBRARY: dict[PathologyType, PathologyPattern] = {
    PathologyType.SAH: PathologyPattern(
        pathology=PathologyType.SAH,
        display_name="Subarachnoid hemorrhage",
        primary_patterns=(
            r"\bsubarachnoid\s+ha?emorrhage\b",
            r"\bSAH\b",
            r"\baneurysm(?:al)?\b",
            r"\bhunt[\s\-]*(?:and[\s\-]*)?hess\b",
            r"\bwfns\b",
        ),
        location_patterns=(
            r"\b(?:acom|pcom|a-?comm|p-?comm)\b",
            r"\b(?:anterior|posterior)\s+communicating\b",
            r"\b(?:mca|ica|aca|pica)\b",
            r"\bbasilar(?:\s+tip)?\b",
            r"\bsylvian\s+fissure\b",
            r"\bbasal\s+cisterns?\b",
        ),
        subtype_patterns=(
            SubtypePattern(
                "HUNTHESS",
                rf"\bhunt[\s\-]*(?:and[\s\-]*)?hess[\s\-]*(?:grade|score|class)?[\s:]*{_GRADE_1_5}",
                min_value=1, max_value=5,
            ),
            SubtypePattern(
                "WFNS", rf"\bwfns[\s\-]*(?:grade|score)?[\s:]*{_GRADE_1_5}", min_value=1, max_value=5
            ),
            SubtypePattern(
                "MODIFIED_FISHER",
                r"\bmodified\s+fisher[\s\-]*(?:grade|score|scale)?[\s:]*(?:of\s+)?([0-4])\b",
                min_value=0, max_value=4,
            ),
            SubtypePattern(
                "FISHER",
                r"(?<!modified )\bfisher[\s\-]*(?:grade|score|scale|group)?[\s:]*(?:of\s+)?([1-4]|iv|i{1,3})\b",
                min_value=1, max_value=4,
            ),
            SubtypePattern(
                "ANEURYSM_LOCATION",
                r"\b(acom|pcom|mca|ica|aca|pica|basilar(?:\s+tip)?|anterior\s+communicating|"
                r"posterior\s+communicating)\s+(?:artery\s+)?aneurysm\b",
                kind="upper",
            ),
        ),
        complications=(
            "vasospasm", "delayed cerebral ischemia", "hydrocephalus",
            "rebleeding", "hyponatremia", "seizure",
        ),
        procedure_patterns=(
            r"\bcoil(?:ing|ed)?\b",
            r"\bclip(?:ping|ped)?\b",
            r"\bflow\s+diverter\b",
            r"\b(?:evd|ventriculostomy|external\s+ventricular\s+drain)\b",
            r"\b(?:cerebral\s+)?angiogra(?:m|phy)\b",
        ),
        expected_fields=("dates.ictus", "pathology.subtype", "imaging"),
    ),
    PathologyType.SDH: PathologyPattern(
        pathology=PathologyType.SDH,
        display_name="Subdural hematoma",
        primary_patterns=(
            r"\bsubdural\s+(?:ha?ematoma|ha?emorrhage|collection)\b",
            r"\bc?SDH\b",
        ),
        location_patterns=(
            r"\bconvexity\b",
            r"\b(?:fronto)?parietal\b",
            r"\bhemispheric\b",
            r"\binterhemispheric\b",
            r"\btentorial\b",
        ),
        subtype_patterns=(
            SubtypePattern(
                "CHRONICITY",
                r"\b(acute[\s\-]on[\s\-]chronic|acute|subacute|chronic)\s+(?:(?:left|right|bilateral)\s+)?"
                r"(?:subdural|c?sdh)\b",
                kind="lower",
            ),
            SubtypePattern(
                "THICKNESS_MM",
                r"\b(\d+(?:\.\d+)?)\s*mm\s+(?:thick|in\s+thickness|(?:\w+\s+){0,2}subdural)",
                kind="number",
            ),
            SubtypePattern(
                "MIDLINE_SHIFT_MM",
                r"\b(\d+(?:\.\d+)?)\s*mm\s+(?:of\s+)?(?:midline\s+shift|mls)\b",
                kind="number",
            ),
        ),
        complications=("recurrent hematoma", "seizure", "pneumocephalus"),
        procedure_patterns=(
            r"\bburr[\s\-]holes?\b",
            r"\btwist[\s\-]drill\b",
            r"\bmma\s+embolization\b",
            r"\bmiddle\s+meningeal\s+artery\s+embolization\b",
            r"\bsubdural\s+drain\b",
            r"\bcraniotomy\b",
        ),
        expected_fields=("pathology.subtype", "imaging"),
    ),
    PathologyType.GLIOBLASTOMA: PathologyPattern(
        pathology=PathologyType.GLIOBLASTOMA,
        display_name="Glioblastoma",
        primary_patterns=(
            r"\bglioblastoma(?:\s+multiforme)?\b",
            r"\bGBM\b",
            r"\bhigh[\s\-]grade\s+glioma\b",
            r"\bglioma\b",
            r"\bastrocytoma\b",
        ),
        location_patterns=(
            r"\b(?:frontal|temporal|parietal|occipital)\s+lobe\b",
            r"\binsula(?:r)?\b",
            r"\bcorpus\s+callosum\b",
            r"\bbutterfly\b",
            r"\beloquent\b",
        ),
        subtype_patterns=(
            _WHO_GRADE,
            SubtypePattern(
                "IDH",
                r"\bidh[\s\-]?[12]?[\s\-]*(wild[\s\-]?type|mutant|mutated|wt)\b",
                kind="lower",
            ),
            SubtypePattern(
                "MGMT",
                r"\bmgmt\s+(?:promoter\s+)?(unmethylated|methylated)\b",
                kind="lower",
            ),
            SubtypePattern(
                "RESECTION_EXTENT",
                r"\b(gross[\s\-]total|near[\s\-]total|subtotal|partial)\s+resection\b",
                kind="lower",
            ),
        ),
        complications=("seizure", "cerebral edema", "new neurologic deficit", "wound infection"),
        procedure_patterns=(
            r"\bresection\b",
            r"\bawake\s+craniotomy\b",
            r"\bcraniotomy\b",
            r"\bstereotactic\s+biopsy\b",
            r"\btemozolomide\b",
            r"\bradiation\b",
        ),
        expected_fields=("pathology.subtype", "imaging", "dates.surgery"),
    ),
    PathologyType.MENINGIOMA: PathologyPattern(
        pathology=PathologyType.MENINGIOMA,
        display_name="Meningioma",
        primary_patterns=(
            r"\bmeningiomas?\b",
            r"\bdural[\s\-]based\s+(?:mass|lesion)\b",
            r"\bdural\s+tail\b",
        ),
        location_patterns=(
            r"\bconvexity\b",
            r"\bparasagittal\b",
            r"\bfalcine\b",
            r"\bsphenoid\s+wing\b",
            r"\bolfactory\s+groove\b",
            r"\btuberculum\s+sellae\b",
            r"\bpetroclival\b",
            r"\bforamen\s+magnum\b",
        ),
        subtype_patterns=(
            _WHO_GRADE,
            SubtypePattern(
                "SIMPSON_GRADE",
                r"\bsimpson\s+(?:grade\s+)?(iv|v|i{1,3}|[1-5])\b",
                min_value=1, max_value=5,
            ),
        ),
        complications=("seizure", "cerebral edema", "CSF leak"),
        procedure_patterns=(
            r"\bcraniotomy\b",
            r"\bresection\b",
            r"\bpre[\s\-]?operative\s+embolization\b",
            r"\bsimpson\b",
        ),
        expected_fields=("pathology.subtype", "imaging", "dates.surgery"),
    ),
    PathologyType.SPINAL_STENOSIS: PathologyPattern(
        pathology=PathologyType.SPINAL_STENOSIS,
        display_name="Spinal stenosis",
        primary_patterns=(
            r"\bspinal\s+stenosis\b",
            r"\b(?:central|foraminal|canal|lumbar|cervical|thoracic)\s+(?:canal\s+)?stenosis\b",
            r"\bneurogenic\s+claudication\b",
            r"\bmyelopathy\b",
            r"\bradiculopathy\b",
            r"\bspondylolisthesis\b",
        ),
        location_patterns=(
            r"\b[CTL]\d{1,2}\s*[-/]\s*[CTLS]?\d{1,2}\b",
            r"\blumbar\b",
            r"\bcervical\b",
            r"\bthoracic\b",
        ),
        subtype_patterns=(
            SubtypePattern(
                "SEVERITY",
                r"\b(mild|moderate|severe)\s+(?:(?:central|foraminal|canal|spinal)\s+)?(?:canal\s+)?stenosis\b",
                kind="lower",
            ),
            SubtypePattern("LEVEL", r"\b([CTL]\d{1,2}\s*[-/]\s*[CTLS]?\d{1,2})\b", kind="upper"),
            SubtypePattern(
                "ASIA", r"\basia\s+(?:grade\s+|impairment\s+scale\s+)?([a-e])\b", kind="upper"
            ),
        ),
        complications=("durotomy", "CSF leak", "wound infection", "hardware failure"),
        procedure_patterns=(
            r"\blaminectomy\b",
            r"\blaminotomy\b",
            r"\b(?:spinal\s+)?fusion\b",
            r"\b(?:micro)?discectomy\b",
            r"\bforaminotomy\b",
            r"\b(?:acdf|tlif|plif)\b",
        ),
        expected_fields=("pathology.subtype", "imaging", "dates.surgery"),
    ),
    PathologyType.AVM: PathologyPattern(
        pathology=PathologyType.AVM,
        display_name="Arteriovenous malformation",
        primary_patterns=(
            r"\barteriovenous\s+malformation\b",
            r"\bAVM\b",
            r"\bnidus\b",
        ),
        location_patterns=(
            r"\b(?:frontal|temporal|parietal|occipital)\s+lobe\b",
            r"\bcerebellar\b",
            r"\bdeep\s+venous\s+drainage\b",
            r"\beloquent\b",
        ),
        subtype_patterns=(
            SubtypePattern(
                "SPETZLER_MARTIN",
                r"\bspetzler[\s\-]*martin\s+(?:grade\s+)?(iv|v|i{1,3}|[1-5])\b",
                min_value=1, max_value=5,
            ),
            SubtypePattern(
                "RUPTURE_STATUS", r"\b(ruptured|unruptured)\s+(?:avm|arteriovenous)\b", kind="lower"
            ),
        ),
        complications=("seizure", "stroke", "rebleeding"),
        procedure_patterns=(
            r"\bembolization\b",
            r"\b(?:avm\s+)?resection\b",
            r"\b(?:stereotactic\s+)?radiosurgery\b",
            r"\bgamma\s+knife\b",
            r"\bangiogra(?:m|phy)\b",
        ),
        expected_fields=("pathology.subtype", "imaging"),
    ),
    PathologyType.HYDROCEPHALUS: PathologyPattern(
        pathology=PathologyType.HYDROCEPHALUS,
        display_name="Hydrocephalus",
        primary_patterns=(
            r"\bhydrocephalus\b",
            r"\bventriculomegaly\b",
            r"\bNPH\b",
        ),
        location_patterns=(
            r"\blateral\s+ventricles?\b",
            r"\bthird\s+ventricle\b",
            r"\bfourth\s+ventricle\b",
            r"\baqueduct(?:al)?\b",
        ),
        subtype_patterns=(
            SubtypePattern(
                "HYDROCEPHALUS_TYPE",
                r"\b(communicating|obstructive|non[\s\-]?communicating|normal\s+pressure)\s+hydrocephalus\b",
                kind="lower",
            ),
        ),
        complications=("shunt malfunction", "shunt infection", "ventriculitis"),
        procedure_patterns=(
            r"\b(?:vp|ventriculoperitoneal)\s+shunt\b",
            r"\b(?:etv|endoscopic\s+third\s+ventriculostomy)\b",
            r"\b(?:evd|external\s+ventricular\s+drain)\b",
            r"\blumbar\s+(?:drain|puncture)\b",
            r"\bshunt\s+revision\b",
        ),
        expected_fields=("pathology.subtype", "imaging"),
    ),
    PathologyType.ICH: PathologyPattern(
        pathology=PathologyType.ICH,
        display_name="Intracerebral hemorrhage",
        primary_patterns=(
            r"\bintracerebral\s+ha?emorrhage\b",
            r"\bintraparenchymal\s+ha?emorrhage\b",
            r"\bhypertensive\s+ha?emorrhage\b",
            r"\bICH\b",
            r"\bIPH\b",
        ),
        location_patterns=(
            r"\bbasal\s+ganglia\b",
            r"\bthalamic\b",
            r"\bputaminal\b",
            r"\blobar\b",
            r"\bpontine\b",
        ),
        subtype_patterns=(
            SubtypePattern(
                "ICH_SCORE", r"\bich\)?\s+score\s*(?:of\s+|:\s*)?([0-6])\b", min_value=0, max_value=6
            ),
            SubtypePattern(
                "VOLUME_ML", r"\b(\d+(?:\.\d+)?)\s*(?:ml|cc)\b(?!/)", kind="number"
            ),
            SubtypePattern(
                "LOCATION", r"\b(basal\s+ganglia|thalamic|putaminal|lobar|cerebellar|pontine)\b", kind="lower"
            ),
        ),
        complications=("hematoma expansion", "cerebral edema", "hydrocephalus"),
        procedure_patterns=(
            r"\b(?:hematoma\s+)?evacuation\b",
            r"\bminimally\s+invasive\b",
            r"\b(?:evd|external\s+ventricular\s+drain)\b",
            r"\bcraniotomy\b",
        ),
        expected_fields=("pathology.subtype", "imaging"),
    ),
    PathologyType.TBI: PathologyPattern(
        pathology=PathologyType.TBI,
        display_name="Traumatic brain injury",
        primary_patterns=(
            r"\btraumatic\s+brain\s+injury\b",
            r"\bTBI\b",
            r"\bdiffuse\s+axonal\s+injury\b",
            r"\bcontusions?\b",
            r"\bepidural\s+ha?ematoma\b",
            r"\bskull\s+fracture\b",
        ),
        location_patterns=(
            r"\bcontrecoup\b",
            r"\bbifrontal\b",
            r"\btemporal\s+lobe\b",
        ),
        subtype_patterns=(
            SubtypePattern(
                "TBI_SEVERITY", r"\b(mild|moderate|severe)\s+(?:traumatic\s+brain\s+injury|tbi)\b", kind="lower"
            ),
            SubtypePattern(
                "MARSHALL",
                r"\bmarshall\s+(?:class\s+|grade\s+)?(vi|iv|v|i{1,3}|[1-6])\b",
                min_value=1, max_value=6,
            ),
        ),
        complications=("cerebral edema", "elevated intracranial pressure", "herniation", "seizure"),
        procedure_patterns=(
            r"\bdecompressive\s+craniectomy\b",
            r"\bicp\s+monitor\b",
            r"\b(?:evd|external\s+ventricular\s+drain)\b",
            r"\bcraniotomy\b",
        ),
        expected_fields=("pathology.subtype", "imaging"),
    ),
    PathologyType.METASTASES: PathologyPattern(
        pathology=PathologyType.METASTASES,
        display_name="Brain metastases",
        primary_patterns=(
            r"\bbrain\s+metasta\w+\b",
            r"\bmetastatic\b",
            r"\bmetastas[ie]s\b",
            r"\bmets\b",
        ),
        location_patterns=(
            r"\bsupratentorial\b",
            r"\binfratentorial\b",
            r"\bcerebellar\b",
        ),
        subtype_patterns=(
            SubtypePattern(
                "PRIMARY_SITE",
                r"\b(?:metasta\w+\s+(?:from|of)\s+|metastatic\s+)(lung|breast|melanoma|renal|colon|colorectal)\b",
                kind="lower",
            ),
            SubtypePattern(
                "LESION_COUNT",
                r"\b(single|solitary|multiple|\d+)\s+(?:brain\s+)?(?:metastases|lesions|mets)\b",
                kind="lower",
            ),
        ),
        complications=("cerebral edema", "seizure"),
        procedure_patterns=(
            r"\b(?:srs|stereotactic\s+radiosurgery)\b",
            r"\bresection\b",
            r"\bwhole[\s\-]brain\s+radiation\b",
            r"\bwbrt\b",
        ),
        expected_fields=("pathology.subtype", "imaging"),
    ),
}


def get_pathology_pattern(pathology: PathologyType) -> PathologyPattern:
    """Profile for a pathology type."""
    return PATHOLOGY_LIBRARY[pathology]


def expected_fields_for(pathology: PathologyType | None) -> tuple[str, ...]:
    """Generic expected fields plus the pathology's own."""
    if pathology is None:
        return GENERIC_EXPECTED_FIELDS
    extra = PATHOLOGY_LIBRARY[pathology].expected_fields
    return GENERIC_EXPECTED_FIELDS + tuple(f for f in extra if f not in GENERIC_EXPECTED_FIELDS)
