from consultas.adapters.base import ChallengeHints, SearchField, SiteAdapter
from consultas.models import SearchMode

URL_SAT_CALLAO = "https://pagopapeletascallao.pe/buscar"

# Tipo de búsqueda del select #tipo_busqueda
_TIPO_PLACA = "1"
_TIPO_PAPELETA = "2"
_TIPO_DOCUMENTO = "3"

SAT_CALLAO = SiteAdapter(
    target_id="sat_callao",
    name="SAT Callao - Papeletas",
    category="infraction",
    search_url=URL_SAT_CALLAO,
    search_modes={
        SearchMode.PLATE: SearchField(
            input_selectors=("#valor_busqueda",),
            select_selectors=("#tipo_busqueda",),
            select_value=_TIPO_PLACA,
        ),
        SearchMode.TICKET_NUMBER: SearchField(
            input_selectors=("#valor_busqueda",),
            select_selectors=("#tipo_busqueda",),
            select_value=_TIPO_PAPELETA,
        ),
        SearchMode.DOCUMENT: SearchField(
            input_selectors=("#valor_busqueda",),
            select_selectors=("#tipo_busqueda",),
            select_value=_TIPO_DOCUMENTO,
            uppercase=False,
        ),
    },
    form_selectors=("#valor_busqueda", "#tipo_busqueda"),
    submit_selectors=("#idBuscar", "button:has-text('Buscar')"),
    # La imagen viene como data:image/png;base64 en el src
    challenge=ChallengeHints(
        kind="image",
        image_selectors=("img[src^='data:image']", "img[src*='captcha']"),
        input_selectors=("#captcha",),
    ),
    result_selectors=("table tbody tr", "div:has-text('No se encontraron')"),
    table_selectors=("table",),
    no_data_markers=("no se encontraron papeletas", "no registra papeletas"),
    field_map={
        "number": ("n papeleta", "nro papeleta", "papeleta"),
        "date": ("fecha infraccion", "fecha"),
        "description": ("codigo", "falta", "infraccion"),
        "amount": ("total", "importe", "monto"),
        "status": ("estado",),
    },
)
