from consultas.adapters.base import (
    ASPNET_ANTI_FORGERY_FIELDS,
    ChallengeHints,
    SearchField,
    SiteAdapter,
)
from consultas.models import SearchMode

SUTRAN_URL = "https://www.sutran.gob.pe/consultas/record-de-infracciones/record-de-infracciones/"

# La página de Sutran embebe el formulario en un iframe:
# https://webexterno.sutran.gob.pe/WebExterno/Pages/frmRecordInfracciones.aspx
# y el captcha en otro iframe aparte (Captcha.aspx?numAleatorio=...)
SUTRAN = SiteAdapter(
    target_id="sutran",
    name="SUTRAN - Récord de infracciones",
    category="infraction",
    search_url=SUTRAN_URL,
    frame_hint="frmRecordInfracciones.aspx",
    search_modes={
        SearchMode.PLATE: SearchField(
            input_selectors=("#txtPlaca", "input[placeholder='Ingrese Placa Vehicular']"),
        ),
    },
    form_selectors=("#txtPlaca", "input[placeholder='Ingrese Placa Vehicular']"),
    submit_selectors=(
        "#BtnBuscar",
        "input[type='submit'][value*='Buscar']",
        "button:has-text('Buscar')",
    ),
    challenge=ChallengeHints(
        kind="image",
        image_selectors=("img",),
        frame_hint="Captcha.aspx",
        input_selectors=("#TxtCodImagen", "input[placeholder='Ingrese el código aquí']"),
        grayscale=True,
    ),
    result_selectors=("#gvInfracciones", "table[id*='gv' i]", "table[id*='grid' i]"),
    table_selectors=("#gvInfracciones", "table[id*='gv' i]", "table[id*='grid' i]"),
    no_data_markers=("no se encontraron infracciones", "no registra infracciones"),
    anti_forgery_fields=ASPNET_ANTI_FORGERY_FIELDS,
    field_map={
        "number": ("numero de documento", "documento", "nro acta", "acta"),
        "date": ("fecha de infraccion", "fecha infraccion", "fecha"),
        "description": ("infraccion", "codigo de infraccion", "descripcion"),
        "amount": ("monto", "importe"),
        "status": ("estado", "situacion"),
    },
)
