"""
Remote attribute names for each survey layer, keyed by local column name.

Layer 0 holds one feature per supervision point. Layers 1 and 2 are related
tables (descriptions and detected facts) linked to the point by GUID, which
carries the parent's GLOBALID.
"""

PARENT_LAYER = 0
DESCRIPTION_LAYER = 1
FACT_LAYER = 2

OBJECT_ID_FIELD = "OBJECTID"
GLOBAL_ID_FIELD = "GLOBALID"
LINK_FIELD = "GUID"
CODE_FIELD = "CA"
ALT_CODE_FIELD = "OTRO_CA"
LAST_EDITED_FIELD = "LAST_EDITED_DATE"

# Layer 0: Movil_sup points
PARENT_FIELDS = {
    "objectid": OBJECT_ID_FIELD,
    "globalid": GLOBAL_ID_FIELD,
    "codigo_accion": CODE_FIELD,
    "otro_ca": ALT_CODE_FIELD,
    "fecha": "FECHA_HORA",
    "nombre_supervisor": "SUPERVISOR",
    "modalidad": "MODALIDAD",
    "actividad": "ACTIVIDAD",
    "componente": "COMPONENTE",
    "tipo_componente": "TIPO_COMPONENTE",
    "instalacion_referencia": "INSTALACION_REFERENCIA",
    "nom_pto_ppc": "NOM_PTO_PPC",
    "num_pto_muestreo": "NUM_PTO_MUESTREO",
    "nom_pto_muestreo": "NOM_PTO_MUESTREO",
    "norte": "NORTE",
    "este": "ESTE",
    "zona": "ZONA",
    "altitud": "ALTITUD",
    "created_user": "CREATED_USER",
    "created_date": "CREATED_DATE",
    "last_edited_user": "LAST_EDITED_USER",
    "last_edited_date": LAST_EDITED_FIELD,
}

# Layer 1: Descripcion table
DESCRIPTION_FIELDS = {
    "objectid": OBJECT_ID_FIELD,
    "guid": LINK_FIELD,
    "descrip_1": "DESCRIP_1",
}

# Layer 2: Hechos table
FACT_FIELDS = {
    "objectid": OBJECT_ID_FIELD,
    "guid": LINK_FIELD,
    "hecho_detec_1": "HECHO_DETEC_1",
    "descrip_2": "DESCRIP_2",
}

# Attributes holding epoch-millisecond dates on the parent layer
PARENT_DATE_FIELDS = ("fecha", "created_date", "last_edited_date")

# Filterable composite-view fields: request key -> local column
FILTER_FIELDS = {
    "supervisor": "nombre_supervisor",
    "componente": "componente",
    "tipo_componente": "tipo_componente",
    "actividad": "actividad",
    "instalacion_referencia": "instalacion_referencia",
    "hecho_detectado": "hecho_detec_1",
}

SORT_FIELDS = (
    "fecha",
    "objectid",
    "nombre_supervisor",
    "componente",
    "tipo_componente",
    "actividad",
    "instalacion_referencia",
    "num_pto_muestreo",
    "last_edited_date",
)

# Child summaries a user may override locally: summary column -> override column
EDITABLE_FIELDS = {
    "descrip_1": "descrip_1_editada",
    "hecho_detec_1": "hecho_detec_1_editado",
    "descrip_2": "descrip_2_editada",
}
